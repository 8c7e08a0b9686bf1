from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class Vehicle(Base):
    """A fleet vehicle owning an odometer-ordered trip sequence."""

    __tablename__ = 'vehicles'

    id = Column(Integer, primary_key=True)
    registration_number = Column(String(32), unique=True, nullable=False)
    make_model = Column(String(120))

    # Expected km per fuel unit when the vehicle has no refuelling history yet
    baseline_efficiency = Column(Float)

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    trips = relationship('Trip', back_populates='vehicle')

    def to_dict(self):
        return {
            'id': self.id,
            'registration_number': self.registration_number,
            'make_model': self.make_model,
            'baseline_efficiency': self.baseline_efficiency,
        }


class Trip(Base):
    """One odometer-tracked journey for a vehicle."""

    __tablename__ = 'trips'

    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey('vehicles.id'), nullable=False, index=True)
    trip_serial_number = Column(String(50))
    trip_start_date = Column(DateTime(timezone=True), nullable=False, index=True)
    trip_end_date = Column(DateTime(timezone=True))

    # Odometer readings (whole km). Distance is always derived from these.
    start_km = Column(Integer, nullable=False)
    end_km = Column(Integer, nullable=False)

    # Refuelling
    refueling_done = Column(Boolean, default=False)
    fuel_quantity = Column(Float)

    # Manually entered readings are never rewritten by a cascade
    is_manual_override = Column(Boolean, default=False, index=True)

    remarks = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    vehicle = relationship('Vehicle', back_populates='trips')
    corrections = relationship('TripCorrection', back_populates='trip')

    @property
    def distance_km(self):
        if self.start_km is None or self.end_km is None:
            return None
        return self.end_km - self.start_km

    @property
    def calculated_efficiency(self):
        """km per fuel unit for this trip alone, or None without fuel data."""
        distance = self.distance_km
        if self.refueling_done is False:
            return None
        if distance is None or self.fuel_quantity is None or self.fuel_quantity <= 0:
            return None
        return distance / self.fuel_quantity

    def to_dict(self):
        return {
            'id': self.id,
            'vehicle_id': self.vehicle_id,
            'trip_serial_number': self.trip_serial_number,
            'trip_start_date': self.trip_start_date.isoformat() if self.trip_start_date else None,
            'trip_end_date': self.trip_end_date.isoformat() if self.trip_end_date else None,
            'start_km': self.start_km,
            'end_km': self.end_km,
            'distance_km': self.distance_km,
            'refueling_done': bool(self.refueling_done),
            'fuel_quantity': self.fuel_quantity,
            'calculated_efficiency': (
                round(self.calculated_efficiency, 2)
                if self.calculated_efficiency is not None else None
            ),
            'is_manual_override': bool(self.is_manual_override),
            'remarks': self.remarks,
        }


class TripCorrection(Base):
    """Audit row written for every trip changed by an odometer correction."""

    __tablename__ = 'trip_corrections'

    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=False, index=True)
    field_name = Column(String(50), nullable=False)  # 'end_km' or 'odometer_cascade'
    old_value = Column(String(50))
    new_value = Column(String(50))
    correction_reason = Column(Text)
    affects_subsequent_trips = Column(Boolean, default=False)
    corrected_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    # Relationships
    trip = relationship('Trip', back_populates='corrections')

    def to_dict(self):
        return {
            'id': self.id,
            'trip_id': self.trip_id,
            'field_name': self.field_name,
            'old_value': self.old_value,
            'new_value': self.new_value,
            'correction_reason': self.correction_reason,
            'affects_subsequent_trips': bool(self.affects_subsequent_trips),
            'corrected_at': self.corrected_at.isoformat() if self.corrected_at else None,
        }


def get_engine(database_url):
    """Create database engine."""
    if database_url.startswith('sqlite'):
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            from sqlalchemy.pool import StaticPool

            # One shared connection so every session sees the same in-memory database
            return create_engine(
                database_url,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={'check_same_thread': False})
    return create_engine(database_url, pool_pre_ping=True)
