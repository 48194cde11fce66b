"""Shared fixtures."""

import pytest

from statement_import.audit import AuditLogger
from statement_import.classification import AIClassificationQueue
from statement_import.config import ImportSettings
from statement_import.orchestrator import ImportSessionOrchestrator, RowMaterializer
from statement_import.services.storage import (
    InMemoryAuditStorage,
    InMemoryImportStorage,
    InMemoryLedger,
)
from tests.fakes import RecordingDispatcher, ScriptedProvider


@pytest.fixture
def import_settings():
    return ImportSettings(ai_backoff_seconds=0.0, ai_timeout_seconds=1.0)


@pytest.fixture
def storage():
    return InMemoryImportStorage()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def orchestrator(storage, provider, import_settings, audit_logger, dispatcher):
    orchestrator = ImportSessionOrchestrator(
        storage=storage,
        ai_queue=AIClassificationQueue.from_settings(provider, import_settings),
        settings=import_settings,
        audit_logger=audit_logger,
    )
    orchestrator.bind_dispatcher(dispatcher)
    return orchestrator


@pytest.fixture
def materializer(storage, ledger, audit_logger):
    return RowMaterializer(storage=storage, ledger=ledger, audit_logger=audit_logger)
