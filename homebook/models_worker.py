"""
Worker Models
Workers, the ZIP codes they serve and their weekly availability.
Read-only to the fulfillment core; maintained by the worker onboarding flow.
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Time
from sqlalchemy.orm import relationship

from .database import Base
from .utils.clock import utcnow


class Worker(Base):
    __tablename__ = "workers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)  # E.164
    is_active = Column(Boolean, default=True, nullable=False)
    # Farthest distance the worker travels from any of their service-area ZIPs
    service_radius_miles = Column(Float, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    service_areas = relationship("WorkerServiceArea", back_populates="worker")
    availability = relationship("WorkerAvailability", back_populates="worker")


class WorkerServiceArea(Base):
    __tablename__ = "worker_service_areas"

    id = Column(Integer, primary_key=True, index=True)
    worker_id = Column(String(36), ForeignKey("workers.id"), nullable=False, index=True)
    zipcode = Column(String(5), nullable=False, index=True)
    # Cached centroid from the ZIP database; filled on insert
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    worker = relationship("Worker", back_populates="service_areas")


class WorkerAvailability(Base):
    __tablename__ = "worker_availability"

    id = Column(Integer, primary_key=True, index=True)
    worker_id = Column(String(36), ForeignKey("workers.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0 = Monday ... 6 = Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    worker = relationship("Worker", back_populates="availability")
