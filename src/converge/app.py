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

    Command line development guidelines
    ###################################

    do's and don'ts
    ----------------
    MUST NOT: sys.exit => use command.CLIException
    SHOULD NOT: print( => use logger for messages, only print for final output


    Entry points
    ------------
    @command annotation to register new command
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from argparse import ArgumentParser
from collections import abc
from typing import Optional, TypeVar

import converge
from converge import const
from converge.command import CLIException, Commander, ShowUsageException, command
from converge.config import Config
from converge.data.model import ApplyReport, Plan, RefreshReport
from converge.graph import ResourceGraph
from converge.loader import load_provider_modules
from converge.logging import ConvergeLoggerConfig
from converge.main import format_value, get_table
from converge.reconciler import Reconciler
from converge.state import FileStateStore
from converge.util import json_encode

LOGGER = logging.getLogger("converge")

T = TypeVar("T")


def declaration_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    parser.add_argument(
        "-f",
        "--file",
        dest="path",
        default=".",
        help="The declaration: a YAML file or a directory with YAML files. Defaults to the current directory.",
    )
    parser.add_argument(
        "--var",
        dest="variables",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set an input variable, the value is parsed as a YAML scalar. Can be repeated.",
    )


def parse_variables(options: argparse.Namespace) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in getattr(options, "variables", None) or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise CLIException(f"Invalid variable {item!r}, expected NAME=VALUE")
        result[name.strip()] = value
    return result


def get_reconciler() -> Reconciler:
    load_provider_modules()
    return Reconciler(FileStateStore())


def load_graph(reconciler: Reconciler, options: argparse.Namespace) -> ResourceGraph:
    return reconciler.load_with_raw_variables(options.path, parse_variables(options))


def run_async(coro: abc.Coroutine[object, None, T]) -> T:
    """
    Run a coroutine to completion. SIGTERM cancels it, like an interrupt does.
    """

    async def main() -> T:
        task = asyncio.ensure_future(coro)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, task.cancel)
        except (NotImplementedError, RuntimeError):
            # no signal handlers outside of the main thread or on this platform
            pass
        try:
            return await task
        finally:
            try:
                loop.remove_signal_handler(signal.SIGTERM)
            except (NotImplementedError, RuntimeError):
                pass

    try:
        return asyncio.run(main())
    except asyncio.CancelledError:
        raise CLIException("Cancelled, the state contains the resources that were applied")


def format_plan(plan: Plan) -> str:
    """
    Render a plan as tables
    """
    rows = []
    for change in plan.changes:
        if change.action is const.ChangeAction.nochange:
            continue
        details = []
        for name, diff in change.attributes.items():
            if change.action is const.ChangeAction.create:
                details.append(f"{name}: {diff.to_value_compare}")
            elif change.action is const.ChangeAction.delete:
                continue
            else:
                line = f"{name}: {diff.from_value_compare} -> {diff.to_value_compare}"
                if diff.forces_replacement:
                    line += " (forces replacement)"
                details.append(line)
        if change.reason:
            details.append(f"# {change.reason}")
        rows.append([change.action.symbol, change.resource_id, change.action.value, "\n".join(details)])

    out = []
    if rows:
        out.append(get_table(["", "Resource", "Action", "Changes"], rows))
    else:
        out.append("No changes. The infrastructure matches the declaration.")

    output_rows = []
    for output_change in plan.output_changes:
        if output_change.action is const.ChangeAction.nochange:
            continue
        if output_change.sensitive:
            value = const.SENSITIVE_VALUE_DISPLAY
        elif output_change.action is const.ChangeAction.delete:
            value = ""
        elif output_change.unknown:
            value = const.UNKNOWN_VALUE_DISPLAY
        else:
            value = format_value(output_change.to_value)
        output_rows.append([output_change.action.symbol, output_change.name, output_change.action.value, value])
    if output_rows:
        out.append(get_table(["", "Output", "Action", "Value"], output_rows))

    out.append(plan.summary_line())
    return "\n\n".join(out)


def format_apply_report(report: ApplyReport) -> str:
    rows = [
        [
            result.resource_id,
            result.action.value,
            result.state.value,
            str(result.attempts),
            result.error or "",
        ]
        for result in report.results
        if result.action is not const.ChangeAction.nochange or result.state is not const.ResourceState.deployed
    ]
    out = []
    if rows:
        out.append(get_table(["Resource", "Action", "State", "Attempts", "Error"], rows))
    out.append(
        "Apply %s: %d deployed, %d failed, %d skipped, %d cancelled."
        % (
            "cancelled" if report.cancelled else ("complete" if report.success else "failed"),
            report.count(const.ResourceState.deployed),
            report.count(const.ResourceState.failed),
            report.count(const.ResourceState.skipped) + report.count(const.ResourceState.skipped_for_dependency),
            report.count(const.ResourceState.cancelled),
        )
    )
    return "\n\n".join(out)


def format_refresh_report(report: RefreshReport) -> str:
    rows = []
    for rid, drift in sorted(report.drifted.items()):
        for name, change in sorted(drift.items()):
            rows.append([rid, "drifted", f"{name}: {format_value(change.desired)} -> {format_value(change.current)}"])
    rows.extend([rid, "purged", "no longer exists"] for rid in report.purged)
    rows.extend([rid, "error", error] for rid, error in sorted(report.errors.items()))
    if not rows:
        return "No drift detected."
    return get_table(["Resource", "Status", "Details"], rows)


@command(
    "validate",
    help_msg="Validate a declaration: syntax, references and dependency cycles",
    parser_config=declaration_parser_config,
)
def validate(options: argparse.Namespace) -> None:
    reconciler = get_reconciler()
    graph = load_graph(reconciler, options)
    print(
        f"The declaration is valid: {len(graph.nodes)} resources, {len(graph.edges)} dependencies,"
        f" {len(graph.outputs)} outputs."
    )


def graph_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    declaration_parser_config(parser, parent_parsers)
    parser.add_argument("--dot", dest="dot", action="store_true", default=False, help="Print the graph in Graphviz DOT format")


@command("graph", help_msg="Show the order in which resources are created", parser_config=graph_parser_config)
def graph(options: argparse.Namespace) -> None:
    reconciler = get_reconciler()
    resource_graph = load_graph(reconciler, options)
    if options.dot:
        print(resource_graph.to_dot(), end="")
        return
    for index, wave in enumerate(resource_graph.generations()):
        print(f"{index}: {', '.join(wave)}")


def plan_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    declaration_parser_config(parser, parent_parsers)
    parser.add_argument("--destroy", dest="destroy", action="store_true", default=False, help="Plan to destroy everything")
    parser.add_argument("--json", dest="json", action="store_true", default=False, help="Print the plan as JSON")
    parser.add_argument("--out", dest="out", default=None, help="Save the plan to this file, to apply it later")
    parser.add_argument(
        "--detailed-exitcode",
        dest="detailed_exitcode",
        action="store_true",
        default=False,
        help="Exit with code 2 when the plan has changes",
    )


@command(
    "plan",
    help_msg="Show the changes needed to make the infrastructure match the declaration",
    parser_config=plan_parser_config,
)
def plan(options: argparse.Namespace) -> None:
    reconciler = get_reconciler()
    resource_graph = load_graph(reconciler, options)
    result = reconciler.plan(resource_graph, destroy=options.destroy)

    if options.out:
        with open(options.out, "w", encoding="utf-8") as fh:
            fh.write(result.model_dump_json(indent=2))
        LOGGER.info("Saved plan to %s", options.out)

    if options.json:
        print(result.model_dump_json(indent=2))
    else:
        print(format_plan(result))

    if options.detailed_exitcode and result.has_changes():
        raise CLIException(exitcode=const.EXIT_PLAN_HAS_CHANGES)


def apply_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    declaration_parser_config(parser, parent_parsers)
    parser.add_argument("--destroy", dest="destroy", action="store_true", default=False, help="Destroy everything")
    parser.add_argument("--plan", dest="plan_file", default=None, help="Apply a plan saved with plan --out")
    parser.add_argument(
        "--parallelism", dest="parallelism", type=int, default=None, help="Maximum number of resources applied at once"
    )
    parser.add_argument(
        "--refresh", dest="refresh", action="store_true", default=False, help="Refresh the state before planning"
    )
    parser.add_argument(
        "--fail-fast",
        dest="fail_fast",
        action="store_true",
        default=None,
        help="Stop starting new resources after the first failure",
    )


def _apply(options: argparse.Namespace, destroy: bool) -> None:
    if options.parallelism is not None and options.parallelism < 1:
        raise ShowUsageException("--parallelism must be at least 1")
    reconciler = get_reconciler()
    resource_graph = load_graph(reconciler, options)

    if getattr(options, "refresh", False):
        print(format_refresh_report(run_async(reconciler.refresh(options.parallelism))))

    plan_file: Optional[str] = getattr(options, "plan_file", None)
    if plan_file:
        with open(plan_file, encoding="utf-8") as fh:
            to_apply = Plan.model_validate_json(fh.read())
    else:
        to_apply = reconciler.plan(resource_graph, destroy=destroy)
    print(format_plan(to_apply))

    if not to_apply.has_changes():
        return

    report = run_async(
        reconciler.apply(
            to_apply, resource_graph, parallelism=options.parallelism, fail_fast=getattr(options, "fail_fast", None)
        )
    )
    print(format_apply_report(report))
    if not report.success:
        failed = [result.resource_id for result in report.failed()]
        raise CLIException(
            "Apply did not complete" + (f", failed: {', '.join(failed)}" if failed else "")
        )


@command("apply", help_msg="Make the infrastructure match the declaration", parser_config=apply_parser_config)
def apply(options: argparse.Namespace) -> None:
    if options.destroy and options.plan_file:
        raise ShowUsageException("--destroy can not be combined with --plan, the saved plan decides what is deleted")
    _apply(options, options.destroy)


def destroy_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    declaration_parser_config(parser, parent_parsers)
    parser.add_argument(
        "--parallelism", dest="parallelism", type=int, default=None, help="Maximum number of resources deleted at once"
    )


@command("destroy", help_msg="Delete every resource in the state", parser_config=destroy_parser_config)
def destroy(options: argparse.Namespace) -> None:
    _apply(options, True)


def refresh_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    parser.add_argument(
        "--parallelism", dest="parallelism", type=int, default=None, help="Maximum number of resources read at once"
    )


@command("refresh", help_msg="Read the live resources and update the state", parser_config=refresh_parser_config)
def refresh(options: argparse.Namespace) -> None:
    reconciler = get_reconciler()
    report = run_async(reconciler.refresh(options.parallelism))
    print(format_refresh_report(report))
    if report.errors:
        raise CLIException(f"Unable to refresh {', '.join(sorted(report.errors))}")


def output_parser_config(parser: ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    parser.add_argument("name", nargs="?", default=None, help="Only show this output")
    parser.add_argument("--json", dest="json", action="store_true", default=False, help="Print the outputs as JSON")


@command("output", help_msg="Show the outputs of the last apply", parser_config=output_parser_config)
def output(options: argparse.Namespace) -> None:
    reconciler = Reconciler(FileStateStore())
    if options.name is not None:
        outputs = reconciler.outputs()
        if options.name not in outputs:
            raise CLIException(f"No output named {options.name}")
        value = outputs[options.name].value
        print(json_encode(value) if options.json else format_value(value))
        return

    outputs = reconciler.outputs(include_sensitive=options.json)
    if options.json:
        print(json_encode({name: value.model_dump(mode="json") for name, value in outputs.items()}, indent=2))
        return
    print(get_table(["Output", "Value"], [[name, format_value(value.value)] for name, value in sorted(outputs.items())]))


@command("list-commands", help_msg="Print out an overview of all commands", add_verbose_flag=False)
def list_commands(options: argparse.Namespace) -> None:
    print("The following commands are available:")
    for name, spec in Commander.commands().items():
        print(f" {name}: {spec.help}")


def help_parser_config(parser: argparse.ArgumentParser, parent_parsers: abc.Sequence[ArgumentParser]) -> None:
    parser.add_argument("subcommand", help="Output help for a particular subcommand", nargs="?", default=None)


@command("help", help_msg="show a help message and exit", parser_config=help_parser_config, add_verbose_flag=False)
def help_command(options: argparse.Namespace) -> None:
    if options.subcommand is None:
        cmd_parser().print_help()
    else:
        parser = cmd_parser()
        parser.parse_args([options.subcommand, "-h"])


def cmd_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="converge")
    parser.add_argument("-c", "--config", dest="config_file", help="Use this config file", default=None)
    parser.add_argument(
        "--config-dir",
        dest="config_dir",
        help="The directory containing the converge configuration files",
        default="/etc/converge/converge.d",
    )
    parser.add_argument("--state", dest="state", help="Path to the state file", default=None)
    parser.add_argument("--log-file", dest="log_file", help="Path to the logfile")
    parser.add_argument(
        "--log-file-level",
        dest="log_file_level",
        choices=["0", "1", "2", "3", "4", "ERROR", "WARNING", "INFO", "DEBUG", "TRACE"],
        default="INFO",
        help="Log level for messages going to the logfile: 0=ERROR, 1=WARNING, 2=INFO, 3=DEBUG",
    )
    parser.add_argument("--logging-config", dest="logging_config", help="Use this dict-based logging config file (YAML)")
    parser.add_argument("--timed-logs", dest="timed", help="Add timestamps to logs", action="store_true")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log level for messages going to the console. Default is warnings,"
        "-v warning, -vv info, -vvv debug and -vvvv trace",
    )
    parser.add_argument(
        "-X", "--extended-errors", dest="errors", help="Show stack traces for errors", action="store_true", default=False
    )
    parser.add_argument(
        "--version", action="store_true", dest="converge_version", help="Show the version of converge", default=False
    )
    parser.add_argument(
        "--keep-logger-names",
        dest="keep_logger_names",
        help="Display the log messages using the name of the logger that created the log messages.",
        action="store_true",
        default=False,
    )

    verbosity_parser = argparse.ArgumentParser(add_help=False)
    verbosity_parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=argparse.SUPPRESS,
        help="Log level for messages going to the console. Default is warnings,"
        "-v warning, -vv info, -vvv debug and -vvvv trace",
    )

    subparsers = parser.add_subparsers(title="commands")
    for name, spec in Commander.commands().items():
        parent_parsers: list[argparse.ArgumentParser] = [verbosity_parser] if spec.add_verbose_flag else []
        cmd_subparser = subparsers.add_parser(name, help=spec.help, aliases=list(spec.aliases), parents=parent_parsers)
        if spec.parser_config is not None:
            spec.parser_config(cmd_subparser, parent_parsers)
        cmd_subparser.set_defaults(func=spec.function)

    return parser


def app(args: Optional[list[str]] = None) -> None:
    """
    Run the converge command line
    """
    log_config = ConvergeLoggerConfig.get_instance()

    parser = cmd_parser()
    options, other = parser.parse_known_args(args)
    options.other = other

    log_config.apply_options(options)

    logging.captureWarnings(True)

    if options.config_file and not os.path.exists(options.config_file):
        LOGGER.warning("Config file %s doesn't exist", options.config_file)

    # Load the configuration
    Config.load_config(options.config_file, options.config_dir)

    if options.state:
        Config.set("config", "state-file", options.state)

    if options.converge_version:
        print(f"converge {converge.CONVERGE_VERSION}")
        sys.exit(const.EXIT_OK)

    # start the command
    if not hasattr(options, "func"):
        # show help
        parser.print_usage()
        return

    if other:
        parser.error("unrecognized arguments: %s" % " ".join(other))

    def report(e: BaseException) -> None:
        if not options.errors:
            message = str(e)
            if message:
                print(message, file=sys.stderr)
        else:
            sys.excepthook(*sys.exc_info())

    try:
        options.func(options)
    except ShowUsageException as e:
        print(e.args[0], file=sys.stderr)
        parser.print_usage()
        sys.exit(const.EXIT_ERROR)
    except CLIException as e:
        report(e)
        sys.exit(e.exitcode)
    except Exception as e:
        report(e)
        sys.exit(const.EXIT_ERROR)
    except KeyboardInterrupt as e:
        report(e)
        sys.exit(const.EXIT_ERROR)
    sys.exit(const.EXIT_OK)


if __name__ == "__main__":
    app()
