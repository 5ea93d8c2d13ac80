"""Wiring of stores, adapters and storage from environment configuration.

Used by the API, the RQ jobs and the CLI scripts so that every entry point
builds the pipeline the same way.
"""

from __future__ import annotations

from functools import lru_cache

import httpx

from pipeline.migrator import ResultMigrator, load_migrator_config
from pipeline.reconciler import StatusReconciler, load_reconciler_config
from pipeline.store import TaskStore
from pipeline.submitter import TaskSubmitter
from providers import build_adapters, load_provider_config
from storage import R2ObjectStorage, load_r2_config


@lru_cache(maxsize=1)
def http_client() -> httpx.Client:
    return httpx.Client(timeout=load_provider_config().timeout_s)


def build_submitter(session) -> TaskSubmitter:
    config = load_provider_config()
    return TaskSubmitter(TaskStore(session), build_adapters(config, http_client()), config)


def build_reconciler(session) -> StatusReconciler:
    config = load_provider_config()
    return StatusReconciler(
        TaskStore(session),
        build_adapters(config, http_client()),
        config,
        load_reconciler_config(),
    )


@lru_cache(maxsize=1)
def object_storage() -> R2ObjectStorage:
    # One S3 client and download client per process, shared by every migrator.
    return R2ObjectStorage(load_r2_config())


def build_migrator(session) -> ResultMigrator:
    return ResultMigrator(TaskStore(session), object_storage(), load_migrator_config())
