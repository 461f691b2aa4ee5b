#!/usr/bin/env python3
"""Worker process: leases jobs from Redis and runs them until SIGTERM.

Usage:
  REDIS_URL=redis://localhost:6379/0 APP_VERSION=v42 \
  TUBEWORK_SETUP=myapp.jobs:configure python scripts/worker.py

``TUBEWORK_SETUP`` names a ``module:function`` that receives the WorkerConfig
and registers the application's operations, entity finders and hooks.

Set TESTING=1 to use the in-memory Redis implementation used by the tests.
"""
import asyncio
import importlib
import logging
import os
from typing import Optional

from tubework.config import Settings, WorkerConfig
from tubework.logutil import configure_logging
from tubework.worker import WorkerLoop

logger = logging.getLogger("worker")


def build_config(settings: Settings) -> WorkerConfig:
    config = WorkerConfig.from_settings(settings)
    setup = os.getenv("TUBEWORK_SETUP")
    if setup:
        module_name, _, attr = setup.partition(":")
        configure = getattr(importlib.import_module(module_name), attr or "configure")
        configure(config)
    return config


async def run_worker(config: Optional[WorkerConfig] = None):
    if config is None:
        config = build_config(Settings.from_env())
    await WorkerLoop(config).run()


if __name__ == "__main__":
    configure_logging(Settings.from_env().log_level)
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("worker: exiting")
