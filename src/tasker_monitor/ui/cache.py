# ui/cache.py
from __future__ import annotations

import logging
import os
from typing import List, Optional

import streamlit as st

from tasker_monitor.config import CONFIG_ENV_VAR
from tasker_monitor.db.services import MonitorService
from tasker_monitor.tasker_config import TaskerConfig, load_tasker_config

logger = logging.getLogger(__name__)

# Lazy singletons (created on first use)
_config: Optional[TaskerConfig] = None
_monitor_svc: Optional[MonitorService] = None


def get_tasker_config() -> TaskerConfig:
    """Load the tasker configuration once; TASKER_MONITOR_CONFIG may name the file."""
    global _config
    if _config is None:
        _config = load_tasker_config(config_file=os.environ.get(CONFIG_ENV_VAR) or None)
        logger.info(
            "Using %s (%s)",
            _config.database.describe(),
            _config.loaded_from or "environment",
        )
    return _config


def get_monitor_service() -> MonitorService:
    global _monitor_svc
    if _monitor_svc is None:
        _monitor_svc = MonitorService(get_tasker_config())
    return _monitor_svc


# Cached loaders for the sidebar and the queries view
@st.cache_data(ttl=10)
def cached_load_reporter_status() -> List[dict]:
    svc = get_monitor_service()
    return svc.reporter_status()


@st.cache_data(ttl=5)
def cached_load_active_queries(status: str = "active", exclude_tasker: bool = False) -> List[dict]:
    svc = get_monitor_service()
    return svc.active_queries(status=status, exclude_tasker=exclude_tasker)


def invalidate_caches(*names: str):
    """
    Centralized cache invalidation helper.
    Allowed names:
      - reporters
      - queries
      - all
    """
    if "all" in names:
        cached_load_reporter_status.clear()
        cached_load_active_queries.clear()
        return

    for name in names:
        if name == "reporters":
            cached_load_reporter_status.clear()
        elif name == "queries":
            cached_load_active_queries.clear()
