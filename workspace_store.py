#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
workspace_store.py - User workspaces: groups of saved map features

Every operation resolves the target group first and checks that it belongs
to the calling user:
- group missing -> WorkspaceNotFoundError (404)
- group owned by someone else -> WorkspaceForbiddenError (403)
Saved geometry is opaque: geojsonData is stored and returned verbatim.
Features are never edited, only created and deleted.
"""

import logging
from numbers import Real
from typing import Any, Callable, Dict, List, Mapping

from sqlalchemy.orm import Session

from database import SessionLocal
from models import SavedFeature, WorkspaceGroup

logger = logging.getLogger("iaware-workspace")

MAX_GROUP_NAME_LENGTH = 255
MAX_FEATURE_TYPE_LENGTH = 50
MAX_COLOR_LENGTH = 20
MIN_OPACITY = 0.1
MAX_OPACITY = 1.0
DEFAULT_COLOR = "#00d4ff"
DEFAULT_OPACITY = 0.8


class WorkspaceError(Exception):
    status_code = 500


class WorkspaceValidationError(WorkspaceError):
    status_code = 400


class WorkspaceNotFoundError(WorkspaceError):
    status_code = 404


class WorkspaceForbiddenError(WorkspaceError):
    status_code = 403


def group_to_dict(group: WorkspaceGroup) -> Dict[str, Any]:
    return {
        "id": group.id,
        "userId": group.user_id,
        "name": group.name,
        "createdAt": group.created_at.isoformat() if group.created_at else None,
    }


def feature_to_dict(feature: SavedFeature) -> Dict[str, Any]:
    return {
        "id": feature.id,
        "groupId": feature.group_id,
        "featureType": feature.feature_type,
        "geojsonData": feature.geojson_data,
        "color": feature.color,
        "opacity": feature.opacity,
        "createdAt": feature.created_at.isoformat() if feature.created_at else None,
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def validate_group_payload(body: Any) -> str:
    if not isinstance(body, Mapping):
        raise WorkspaceValidationError("Request body must be a JSON object")
    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkspaceValidationError("Group name required")
    name = name.strip()
    if len(name) > MAX_GROUP_NAME_LENGTH:
        raise WorkspaceValidationError(f"Group name longer than {MAX_GROUP_NAME_LENGTH} characters")
    return name


def validate_feature_payload(body: Any) -> Dict[str, Any]:
    """Field-bound checks only; geometry correctness is the client's job."""
    if not isinstance(body, Mapping):
        raise WorkspaceValidationError("Request body must be a JSON object")

    group_id = body.get("groupId")
    if not isinstance(group_id, int) or isinstance(group_id, bool):
        raise WorkspaceValidationError("groupId must be an integer")

    feature_type = body.get("featureType")
    if not isinstance(feature_type, str) or not feature_type:
        raise WorkspaceValidationError("featureType required")
    if len(feature_type) > MAX_FEATURE_TYPE_LENGTH:
        raise WorkspaceValidationError(f"featureType longer than {MAX_FEATURE_TYPE_LENGTH} characters")

    geojson_data = body.get("geojsonData")
    if not isinstance(geojson_data, str) or not geojson_data:
        raise WorkspaceValidationError("geojsonData must be a serialized GeoJSON string")

    color = body.get("color", DEFAULT_COLOR)
    if not isinstance(color, str) or not color or len(color) > MAX_COLOR_LENGTH:
        raise WorkspaceValidationError(f"color must be a string of at most {MAX_COLOR_LENGTH} characters")

    opacity = body.get("opacity", DEFAULT_OPACITY)
    if not _is_number(opacity) or not (MIN_OPACITY <= opacity <= MAX_OPACITY):
        raise WorkspaceValidationError(f"opacity must be between {MIN_OPACITY} and {MAX_OPACITY}")

    return {
        "group_id": group_id,
        "feature_type": feature_type,
        "geojson_data": geojson_data,
        "color": color,
        "opacity": float(opacity),
    }


class WorkspaceStore:
    """CRUD over user-scoped groups and their saved features (DB-backed)"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def _owned_group(self, db: Session, user_id: str, group_id: int) -> WorkspaceGroup:
        group = db.query(WorkspaceGroup).filter(WorkspaceGroup.id == group_id).first()
        if group is None:
            raise WorkspaceNotFoundError("Group not found")
        if group.user_id != user_id:
            raise WorkspaceForbiddenError("Forbidden")
        return group

    def list_groups(self, user_id: str) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            groups = (
                db.query(WorkspaceGroup)
                .filter(WorkspaceGroup.user_id == user_id)
                .order_by(WorkspaceGroup.created_at, WorkspaceGroup.id)
                .all()
            )
            return [group_to_dict(g) for g in groups]
        finally:
            db.close()

    def create_group(self, user_id: str, name: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            group = WorkspaceGroup(user_id=user_id, name=name)
            db.add(group)
            db.commit()
            db.refresh(group)
            logger.info(f"Created group {group.id}")
            return group_to_dict(group)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_group(self, user_id: str, group_id: int) -> int:
        """Delete a group and all its features in one transaction; returns the feature count."""
        db = self.session_factory()
        try:
            group = self._owned_group(db, user_id, group_id)
            removed = (
                db.query(SavedFeature)
                .filter(SavedFeature.group_id == group.id)
                .delete(synchronize_session=False)
            )
            db.delete(group)
            db.commit()
            logger.info(f"Deleted group {group_id} with {removed} feature(s)")
            return removed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_features(self, user_id: str, group_id: int) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            group = self._owned_group(db, user_id, group_id)
            features = (
                db.query(SavedFeature)
                .filter(SavedFeature.group_id == group.id)
                .order_by(SavedFeature.created_at, SavedFeature.id)
                .all()
            )
            return [feature_to_dict(f) for f in features]
        finally:
            db.close()

    def create_feature(self, user_id: str, group_id: int, feature_type: str, geojson_data: str,
                       color: str = DEFAULT_COLOR, opacity: float = DEFAULT_OPACITY) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            group = self._owned_group(db, user_id, group_id)
            feature = SavedFeature(
                group_id=group.id,
                feature_type=feature_type,
                geojson_data=geojson_data,
                color=color,
                opacity=opacity,
            )
            db.add(feature)
            db.commit()
            db.refresh(feature)
            logger.info(f"Saved {feature_type} feature {feature.id} in group {group.id}")
            return feature_to_dict(feature)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_feature(self, user_id: str, feature_id: int) -> None:
        db = self.session_factory()
        try:
            feature = db.query(SavedFeature).filter(SavedFeature.id == feature_id).first()
            if feature is None:
                raise WorkspaceNotFoundError("Feature not found")
            group = db.query(WorkspaceGroup).filter(WorkspaceGroup.id == feature.group_id).first()
            if group is None or group.user_id != user_id:
                raise WorkspaceForbiddenError("Forbidden")
            db.delete(feature)
            db.commit()
            logger.info(f"Deleted feature {feature_id}")
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
