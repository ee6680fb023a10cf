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

import importlib
import importlib.metadata
import logging
from collections.abc import Iterable
from typing import Optional

from converge import config

LOGGER = logging.getLogger(__name__)

# Distributions expose provider modules under this entry point group
PROVIDER_ENTRY_POINT_GROUP = "converge.providers"


class ProviderLoadError(Exception):
    """
    A provider module could not be imported
    """


def load_provider_modules(modules: Optional[Iterable[str]] = None, entry_points: bool = True) -> list[str]:
    """
    Import the modules that register handlers.

    :param modules: Module names to import, the `providers.modules` config option when not set.
    :param entry_points: Also load the modules advertised in the `converge.providers` entry point group.
    :return: The names of the modules and entry points that were loaded
    :raises ProviderLoadError: A module could not be imported
    """
    loaded: list[str] = []
    names = list(modules) if modules is not None else config.provider_modules.get()
    for name in names:
        if not name:
            continue
        LOGGER.debug("Loading provider module %s", name)
        try:
            importlib.import_module(name)
        except ImportError as e:
            raise ProviderLoadError(f"Unable to load provider module {name}: {e}") from e
        loaded.append(name)

    if entry_points:
        for entry_point in importlib.metadata.entry_points(group=PROVIDER_ENTRY_POINT_GROUP):
            LOGGER.debug("Loading provider entry point %s (%s)", entry_point.name, entry_point.value)
            try:
                entry_point.load()
            except Exception as e:
                raise ProviderLoadError(f"Unable to load provider entry point {entry_point.name}: {e}") from e
            loaded.append(entry_point.name)
    return loaded
