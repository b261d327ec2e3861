from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, JSON, Index
from core.timeutil import utcnow
from models.base import Base, ZoneKind


class Region(Base):
    """
    Administrative or maritime boundary downloaded from the boundary source.

    region_id is the upstream relation identifier. The bounding box is
    denormalised from the geometry for cheap candidate filtering.
    """
    __tablename__ = "regions"

    region_id = Column(BigInteger, primary_key=True, autoincrement=False)
    kind = Column(Enum(ZoneKind), nullable=False, index=True)
    name = Column(String(255), nullable=True)

    geometry = Column(JSON, nullable=True)
    min_lat = Column(Float, nullable=True)
    min_lon = Column(Float, nullable=True)
    max_lat = Column(Float, nullable=True)
    max_lon = Column(Float, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_regions_bbox", "min_lat", "max_lat", "min_lon", "max_lon"),
    )
