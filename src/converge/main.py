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

import importlib.metadata
import logging
import shutil
from typing import Optional

import click
import texttable

from converge import const
from converge.config import Config
from converge.data.model import ResourceRecord
from converge.resources import Id
from converge.state import FileStateStore, StateError, set_tainted
from converge.types import ResourceIdStr
from converge.util import click_group_with_plugins, json_encode

LOGGER = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def print_table(header: list[str], rows: list[list[str]], data_type: Optional[list[str]] = None) -> None:
    click.echo(get_table(header, rows, data_type))


def get_table(header: list[str], rows: list[list[str]], data_type: Optional[list[str]] = None) -> str:
    """
    Returns a table that would fit in the current terminal.
    """
    width, _ = shutil.get_terminal_size()

    table = texttable.Texttable(max_width=width)
    table.set_deco(texttable.Texttable.HEADER | texttable.Texttable.BORDER | texttable.Texttable.VLINES)
    if data_type is not None:
        table.set_cols_dtype(data_type)
    table.header(header)
    for row in rows:
        table.add_row(row)
    return table.draw()


def format_value(value: object) -> str:
    if isinstance(value, str):
        return value
    return json_encode(value, indent=2)


def _resource_id(value: str) -> ResourceIdStr:
    if not Id.is_resource_id(value):
        raise click.BadParameter(f"{value!r} is not a resource id, expected <type>.<name>")
    return ResourceIdStr(value)


def _get_record(store: FileStateStore, resource_id: ResourceIdStr) -> ResourceRecord:
    record = store.load().get(resource_id)
    if record is None:
        raise click.ClickException(f"{resource_id} is not in the state {store.path}")
    return record


@click_group_with_plugins(importlib.metadata.entry_points(group="converge.cli_plugins"))
@click.group(help="Inspect and manipulate the converge state")
@click.option("-c", "--config", "config_file", help="Use this config file", default=None)
@click.option("--state", "state_file", help="Path to the state file", default=None)
@click.pass_context
def cmd(ctx: click.Context, config_file: Optional[str], state_file: Optional[str]) -> None:
    Config.load_config(config_file)
    ctx.obj = FileStateStore(state_file)


@cmd.group("state", help="Subcommand to manage the state")
@click.pass_context
def state(ctx: click.Context) -> None:
    pass


@state.command(name="list", help="List all resources in the state")
@click.pass_obj
def state_list(store: FileStateStore) -> None:
    try:
        snapshot = store.load()
    except StateError as e:
        raise click.ClickException(str(e))

    print_table(
        ["Resource", "Provider id", "Tainted", "Updated"],
        [
            [
                record.resource_id,
                record.provider_id or "",
                "yes" if record.tainted else "no",
                record.updated.strftime(TIME_FORMAT),
            ]
            for record in (snapshot.resources[rid] for rid in snapshot.sorted_ids())
        ],
    )
    click.echo(f"serial {snapshot.serial}, lineage {snapshot.lineage}")


@state.command(name="show", help="Show the recorded state of a resource")
@click.argument("resource_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the record as JSON")
@click.pass_obj
def state_show(store: FileStateStore, resource_id: str, as_json: bool) -> None:
    try:
        record = _get_record(store, _resource_id(resource_id))
    except StateError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(record.model_dump_json(indent=2))
        return

    rows = [
        ["Resource", record.resource_id],
        ["Provider id", record.provider_id or ""],
        ["Tainted", "yes" if record.tainted else "no"],
        ["Prevent destroy", "yes" if record.prevent_destroy else "no"],
        ["Requires", "\n".join(record.requires)],
        ["Updated", record.updated.strftime(TIME_FORMAT)],
    ]
    rows.extend([name, format_value(value)] for name, value in sorted(record.attributes.items()))
    rows.extend([f"{name} (computed)", format_value(value)] for name, value in sorted(record.computed.items()))
    print_table(["Name", "Value"], rows)


@state.command(name="rm", help="Forget a resource: remove it from the state without deleting it")
@click.argument("resource_id")
@click.pass_obj
def state_rm(store: FileStateStore, resource_id: str) -> None:
    rid = _resource_id(resource_id)
    try:
        with store.lock():
            snapshot = store.load()
            if rid not in snapshot.resources:
                raise click.ClickException(f"{rid} is not in the state {store.path}")
            dependents = sorted(other for other, record in snapshot.resources.items() if rid in record.requires)
            if dependents:
                LOGGER.warning("%s is required by %s", rid, ", ".join(dependents))
            del snapshot.resources[rid]
            store.save(snapshot)
    except StateError as e:
        raise click.ClickException(str(e))
    click.echo(f"Removed {rid} from the state")


def _set_tainted(store: FileStateStore, resource_id: str, tainted: bool) -> None:
    rid = _resource_id(resource_id)
    try:
        with store.lock():
            snapshot = store.load()
            try:
                set_tainted(snapshot, rid, tainted)
            except KeyError:
                raise click.ClickException(f"{rid} is not in the state {store.path}")
            store.save(snapshot)
    except StateError as e:
        raise click.ClickException(str(e))


@state.command(name="taint", help="Mark a resource to be replaced on the next apply")
@click.argument("resource_id")
@click.pass_obj
def state_taint(store: FileStateStore, resource_id: str) -> None:
    _set_tainted(store, resource_id, True)
    click.echo(f"{resource_id} will be replaced on the next apply")


@state.command(name="untaint", help="Remove the taint from a resource")
@click.argument("resource_id")
@click.pass_obj
def state_untaint(store: FileStateStore, resource_id: str) -> None:
    _set_tainted(store, resource_id, False)
    click.echo(f"{resource_id} is no longer tainted")


@cmd.group("config", help="Subcommand to inspect the configuration")
def config_group() -> None:
    pass


@config_group.command(name="list", help="List all config options with their current value")
def config_list() -> None:
    rows = []
    for section, options in sorted(Config.get_config_options().items()):
        for name, option in sorted(options.items()):
            rows.append(
                [
                    f"{section}.{name}",
                    option.get_type() or "",
                    option.get_default_desc(),
                    option.get_environment_variable(),
                    format_value(option.get()) + (" (set)" if Config.is_set(section, name) else ""),
                ]
            )
    print_table(["Option", "Type", "Default", "Environment variable", "Value"], rows)


@cmd.command(name="output", help="Show the outputs recorded after the last apply")
@click.option("--show-sensitive", is_flag=True, default=False, help="Show the values of sensitive outputs")
@click.pass_obj
def output(store: FileStateStore, show_sensitive: bool) -> None:
    try:
        outputs = store.load().outputs
    except StateError as e:
        raise click.ClickException(str(e))
    print_table(
        ["Output", "Value"],
        [
            [
                name,
                const.SENSITIVE_VALUE_DISPLAY if value.sensitive and not show_sensitive else format_value(value.value),
            ]
            for name, value in sorted(outputs.items())
        ],
    )


def main() -> None:
    cmd()


if __name__ == "__main__":
    main()
