"""Configuration for sqlite-tracking, read from ``SQLITE_TRACKING_*`` env vars."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_STATEMENTS = (
    "CREATE TABLE,ALTER TABLE,DROP TABLE,RENAME TABLE,"
    "CREATE INDEX,DROP INDEX,"
    "INSERT,UPDATE,DELETE,TRUNCATE,"
    "CREATE VIEW,ALTER VIEW,DROP VIEW"
)


class TrackingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SQLITE_TRACKING_")

    # Table in the main schema holding one row per tracked version
    tracking_table: str = "_tracking"
    # Statement kinds recorded by new versions unless told otherwise
    default_statements: str = DEFAULT_STATEMENTS
    # Seed the DDL log with a DROP statement ahead of the CREATE
    add_drop_table: bool = True
    add_drop_view: bool = True
    # Start tracking automatically when an untracked table is created
    version_auto_create: bool = False
    # User that statements are attributed to when none is given
    default_username: str = "admin"
    # Separator used to group table names into a tree
    table_separator: str = "__"


@lru_cache
def get_settings() -> TrackingSettings:
    return TrackingSettings()
