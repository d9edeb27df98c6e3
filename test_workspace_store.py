#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
test_workspace_store.py - Unit tests for workspace_store.py

Runs against a throwaway SQLite file:
  - payload validation bounds
  - ownership: 404 for missing, 403 for another user's group/feature
  - geojsonData stored verbatim
  - group deletion removes exactly its features
"""

import json
import os
import shutil
import tempfile
import unittest

from sqlalchemy.orm import sessionmaker

from database import Base, create_db_engine
from models import SavedFeature
from workspace_store import (
    WorkspaceForbiddenError,
    WorkspaceNotFoundError,
    WorkspaceStore,
    WorkspaceValidationError,
    validate_feature_payload,
    validate_group_payload,
)

ALICE = "a" * 64
BOB = "b" * 64

CIRCLE = json.dumps({
    "type": "Feature",
    "geometry": {"type": "Point", "coordinates": [-73.9857, 40.7484]},
    "properties": {"featureType": "circle", "radius": 250.5},
}, separators=(",", ":"))


class TestPayloadValidation(unittest.TestCase):

    def feature_body(self, **overrides):
        body = {"groupId": 1, "featureType": "polygon", "geojsonData": CIRCLE, "color": "#ff0000", "opacity": 0.8}
        body.update(overrides)
        return body

    def test_group_name_trimmed(self):
        self.assertEqual(validate_group_payload({"name": "  Recon  "}), "Recon")

    def test_group_name_required(self):
        for body in ({}, {"name": ""}, {"name": "   "}, {"name": 5}, ["name"]):
            with self.assertRaises(WorkspaceValidationError):
                validate_group_payload(body)

    def test_group_name_too_long(self):
        with self.assertRaises(WorkspaceValidationError):
            validate_group_payload({"name": "x" * 256})

    def test_valid_feature(self):
        fields = validate_feature_payload(self.feature_body())
        self.assertEqual(fields["group_id"], 1)
        self.assertEqual(fields["opacity"], 0.8)
        self.assertEqual(fields["geojson_data"], CIRCLE)

    def test_defaults(self):
        body = self.feature_body()
        del body["color"], body["opacity"]
        fields = validate_feature_payload(body)
        self.assertEqual(fields["color"], "#00d4ff")
        self.assertEqual(fields["opacity"], 0.8)

    def test_opacity_bounds(self):
        for opacity in (1.5, 0.05, -1, "0.5", True, None):
            with self.assertRaises(WorkspaceValidationError):
                validate_feature_payload(self.feature_body(opacity=opacity))
        self.assertEqual(validate_feature_payload(self.feature_body(opacity=0.1))["opacity"], 0.1)
        self.assertEqual(validate_feature_payload(self.feature_body(opacity=1))["opacity"], 1.0)

    def test_field_lengths(self):
        bad = [
            {"featureType": "x" * 51},
            {"featureType": ""},
            {"color": "#" + "f" * 20},
            {"geojsonData": {"type": "Point"}},
            {"geojsonData": ""},
            {"groupId": "1"},
            {"groupId": True},
        ]
        for override in bad:
            with self.assertRaises(WorkspaceValidationError, msg=str(override)):
                validate_feature_payload(self.feature_body(**override))


class TestWorkspaceStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.engine = create_db_engine(f"sqlite:///{os.path.join(self.tmpdir, 'workspace.db')}")
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.store = WorkspaceStore(self.session_factory)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def add_features(self, user_id, group_id, count):
        return [
            self.store.create_feature(user_id, group_id, "point", json.dumps({"type": "Point", "coordinates": [i, i]}))
            for i in range(count)
        ]

    def test_groups_are_per_user(self):
        self.store.create_group(ALICE, "Alpha")
        self.store.create_group(BOB, "Bravo")
        self.assertEqual([g["name"] for g in self.store.list_groups(ALICE)], ["Alpha"])
        self.assertEqual([g["userId"] for g in self.store.list_groups(BOB)], [BOB])

    def test_geojson_round_trip_verbatim(self):
        group = self.store.create_group(ALICE, "Alpha")
        created = self.store.create_feature(ALICE, group["id"], "circle", CIRCLE, "#00ff00", 0.8)
        listed = self.store.list_features(ALICE, group["id"])
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0]["geojsonData"], CIRCLE)
        self.assertEqual(listed[0]["id"], created["id"])
        self.assertEqual(listed[0]["opacity"], 0.8)
        self.assertEqual(listed[0]["color"], "#00ff00")

    def test_other_users_group_is_forbidden(self):
        group = self.store.create_group(ALICE, "Alpha")
        with self.assertRaises(WorkspaceForbiddenError):
            self.store.list_features(BOB, group["id"])
        with self.assertRaises(WorkspaceForbiddenError):
            self.store.create_feature(BOB, group["id"], "point", CIRCLE)
        with self.assertRaises(WorkspaceForbiddenError):
            self.store.delete_group(BOB, group["id"])

    def test_missing_group_is_not_found(self):
        with self.assertRaises(WorkspaceNotFoundError):
            self.store.list_features(ALICE, 999)
        with self.assertRaises(WorkspaceNotFoundError):
            self.store.delete_group(ALICE, 999)

    def test_feature_delete_ownership(self):
        group = self.store.create_group(ALICE, "Alpha")
        feature = self.add_features(ALICE, group["id"], 1)[0]
        with self.assertRaises(WorkspaceForbiddenError):
            self.store.delete_feature(BOB, feature["id"])
        with self.assertRaises(WorkspaceNotFoundError):
            self.store.delete_feature(ALICE, feature["id"] + 100)
        self.store.delete_feature(ALICE, feature["id"])
        self.assertEqual(self.store.list_features(ALICE, group["id"]), [])

    def test_delete_group_removes_exactly_its_features(self):
        doomed = self.store.create_group(ALICE, "Doomed")
        kept = self.store.create_group(ALICE, "Kept")
        self.add_features(ALICE, doomed["id"], 3)
        self.add_features(ALICE, kept["id"], 2)

        self.assertEqual(self.store.delete_group(ALICE, doomed["id"]), 3)

        with self.assertRaises(WorkspaceNotFoundError):
            self.store.list_features(ALICE, doomed["id"])
        self.assertEqual(len(self.store.list_features(ALICE, kept["id"])), 2)
        db = self.session_factory()
        try:
            self.assertEqual(db.query(SavedFeature).filter(SavedFeature.group_id == doomed["id"]).count(), 0)
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
