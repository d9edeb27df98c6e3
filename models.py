from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime, timezone


def utc_now():
    return datetime.now(timezone.utc)


class WorkspaceGroup(Base):
    __tablename__ = "groups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)  # hashed subject id
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utc_now)

    features = relationship(
        "SavedFeature",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class SavedFeature(Base):
    __tablename__ = "saved_features"
    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_type = Column(String(50), nullable=False)  # point, line, polygon, rectangle, circle
    geojson_data = Column(Text, nullable=False)  # serialized Feature, stored verbatim
    color = Column(String(20), nullable=False, default="#00d4ff")
    opacity = Column(Float, nullable=False, default=0.8)
    created_at = Column(DateTime, default=utc_now)

    group = relationship("WorkspaceGroup", back_populates="features")
