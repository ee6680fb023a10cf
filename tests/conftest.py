"""
Copyright 2025 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

import logging
import os

import pytest

import converge
from converge.config import Config
from converge.handler import HandlerRegistry
from converge.logging import ConvergeLoggerConfig
from converge.providers.local import LocalHandler
from converge.state import MemoryStateStore
from utils import FakeCloud, make_cloud_handler

logger = logging.getLogger(__name__)

converge.RUNNING_TESTS = True


@pytest.fixture(autouse=True)
def reset_all(tmp_path, monkeypatch):
    """
    Every test starts from a clean config, a clean default registry (with only the local provider) and in an empty
    working directory.
    """
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("CONVERGE_"):
            monkeypatch.delenv(name)
    Config._reset()
    HandlerRegistry.reset_default()
    HandlerRegistry.get_default().add_provider("*", "local", LocalHandler)
    yield
    ConvergeLoggerConfig.clean_instance()
    Config._reset()
    HandlerRegistry.reset_default()


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud) -> HandlerRegistry:
    """
    A registry that serves every resource type from the fake cloud
    """
    registry = HandlerRegistry()
    registry.add_provider("*", "cloud", make_cloud_handler(cloud))
    return registry


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()
