"""
This file contains shared fixtures for all tests.
"""
import logging
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from ivoryoperator.crds.registry import create_operator_registry
from ivoryoperator.utils.kube import KubeStore
from tests.helpers import FakeStore


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("tests")


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def mock_apis():
    """
    A KubeStore whose typed API classes are MagicMocks, keyed by class.
    """
    api_client = MagicMock(spec=client.ApiClient)
    # Dicts pass through; typed responses are never produced by the mocks.
    api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    store = KubeStore(create_operator_registry(), api_client=api_client)
    apis = {
        client.CustomObjectsApi: MagicMock(),
        client.CoreV1Api: MagicMock(),
        client.AppsV1Api: MagicMock(),
        client.BatchV1Api: MagicMock(),
    }
    store._apis.update(apis)
    return store, apis
