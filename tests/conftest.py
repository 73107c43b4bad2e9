"""Shared fixtures: parsed guild config and season catalog.  No database or network access."""

from __future__ import annotations

import pytest

from guild_etl.config import build_guild_config, build_season_catalog
from guild_payloads import GUILD_DATA, SEASONS_DATA


@pytest.fixture()
def guild_config():
    return build_guild_config(GUILD_DATA)


@pytest.fixture()
def catalog():
    return build_season_catalog(SEASONS_DATA)


@pytest.fixture()
def season(catalog):
    return catalog.current()
