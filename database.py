#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
database.py - SQLAlchemy engine and session factory

DATABASE_URL selects the backing store (SQLite file by default).
SQLite connections get foreign keys switched on so saved features
cascade with their group.
"""

import os
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

logger = logging.getLogger("iaware-database")

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./iaware.db")


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_db_engine(url: str = DATABASE_URL):
    connect_args = {"check_same_thread": False} if _is_sqlite(url) else {}
    db_engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)

    if _is_sqlite(url):
        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.info("Database engine created (%s)", db_engine.url.get_backend_name())
    return db_engine


engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
