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

import asyncio
import datetime
import functools
import hashlib
import importlib.metadata
import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import click
import pydantic

from converge import const
from converge.types import ReturnTypes

LOGGER = logging.getLogger(__name__)


def custom_json_encoder(o: object) -> ReturnTypes:
    """
    A custom json encoder that knows how to encode the data types used in state and plans
    """
    if isinstance(o, pydantic.BaseModel):
        return o.model_dump(mode="json")

    if isinstance(o, (set, frozenset)):
        return sorted(o, key=str)

    if isinstance(o, datetime.datetime):
        return o.isoformat()

    if isinstance(o, const.ChangeAction):
        return o.value

    # Unknown values (and references) have a stable string form
    return str(o)


def json_encode(value: object, indent: Optional[int] = None) -> str:
    return json.dumps(value, default=custom_json_encoder, sort_keys=True, indent=indent)


def make_attribute_hash(resource_id: str, attributes: Mapping[str, object]) -> str:
    """
    This method returns the attribute hash for the attributes of the given resource.
    """
    character = json_encode(attributes)
    m = hashlib.sha256()
    m.update(resource_id.encode("utf-8"))
    m.update(character.encode("utf-8"))
    return m.hexdigest()


def atomic_write(path: str, content: str) -> None:
    """
    Write content to a file so that readers either see the old or the new content, never a partial write.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".%s." % os.path.basename(path), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def compute_backoff(attempt: int, initial: float, maximum: float) -> float:
    """
    Delay before the given retry attempt (1-based): exponential, starting at initial, capped at maximum
    """
    if attempt < 1:
        return 0.0
    return min(initial * (2 ** (attempt - 1)), maximum)


async def join_threadpools(threadpools: list[ThreadPoolExecutor]) -> None:
    """
    Shutdown the given threadpools without blocking the event loop
    """
    loop = asyncio.get_running_loop()
    for threadpool in threadpools:
        threadpool.shutdown(wait=False)
    await asyncio.gather(*(loop.run_in_executor(None, threadpool.shutdown, True) for threadpool in threadpools))


def click_group_with_plugins(plugins: Iterable[importlib.metadata.EntryPoint]) -> Callable[[click.Group], click.Group]:
    """
    A decorator to register external CLI commands to an instance of `click.Group()`.

    :param plugins: An iterable producing one `importlib.metadata.EntryPoint` per iteration
    :return: The provided click group with the new commands
    """

    def decorator(group: click.Group) -> click.Group:
        for entry_point in plugins:
            try:
                group.add_command(entry_point.load())
            except Exception as e:
                # A broken plugin gets a command that explains the error instead of breaking the CLI
                def print_error(error: Exception) -> None:
                    click.echo(f"Error: could not load this plugin for the following reason: {error}")

                new_print_error = functools.partial(print_error, e)
                group.add_command(click.Command(name=entry_point.name, callback=new_print_error))

        return group

    return decorator
