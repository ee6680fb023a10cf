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
import logging.config
import os
import sys
from argparse import Namespace
from collections.abc import Mapping, Sequence
from typing import Optional, TextIO

import colorlog
import yaml
from colorlog.formatter import LogColors

from converge import const

LOGGER = logging.getLogger(__name__)

logging.addLevelName(const.LOG_LEVEL_TRACE, "TRACE")

# Verbosity counts (-v .. -vvvv) and level names accepted on the command line
LOG_LEVELS: dict[str, int] = {
    "0": logging.ERROR,
    "1": logging.WARNING,
    "2": logging.INFO,
    "3": logging.DEBUG,
    "4": const.LOG_LEVEL_TRACE,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": const.LOG_LEVEL_TRACE,
}

CONSOLE_COLORS: LogColors = {"DEBUG": "cyan", "INFO": "green", "WARNING": "yellow", "ERROR": "red", "CRITICAL": "red"}


def _is_on_tty() -> bool:
    if const.ENVIRON_FORCE_TTY in os.environ:
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def level_name(level: int) -> str:
    """
    The name dictConfig understands for a python log level
    """
    name = logging.getLevelName(level)
    return name if isinstance(name, str) and not name.startswith("Level ") else str(level)


def convert_log_level(log_level: str, cli: bool = False) -> int:
    """
    Translate a verbosity count or a level name to a python log level. Counts above 4 mean TRACE.

    :param cli: The level is for the console, where nothing is less verbose than WARNING
    """
    if log_level.isdigit():
        log_level = str(min(int(log_level), 4))
    if cli and log_level in ("0", "ERROR"):
        log_level = "WARNING"
    if log_level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level {log_level}, expected one of {', '.join(LOG_LEVELS)}")
    return LOG_LEVELS[log_level]


class Options(Namespace):
    """
    The logging related command line options. The parsed argparse namespace of the `converge` command fits.

    :param log_file: Also write the logs to this file
    :param log_file_level: The level for the log file, a verbosity count or a level name
    :param verbose: The verbosity count for the console
    :param timed: Prefix console lines with the time
    :param keep_logger_names: Show the full logger name instead of the short one
    :param logging_config: A YAML file in dictConfig format. When given, the other options are ignored.
    """

    log_file: Optional[str] = None
    log_file_level: str = "INFO"
    verbose: int = 1
    timed: bool = False
    keep_logger_names: bool = False
    logging_config: Optional[str] = None


def console_formatter(keep_logger_names: bool, timed: bool = False) -> dict[str, object]:
    """
    The dictConfig entry for the console formatter. Colors are only used on a terminal.
    """
    width = 25 if keep_logger_names else 12
    fmt = "%(asctime)s " if timed else ""
    colored = _is_on_tty()
    if colored:
        fmt += f"%(log_color)s%(name)-{width}s%(levelname)-8s%(reset)s%(blue)s%(message)s"
    else:
        fmt += f"%(name)-{width}s%(levelname)-8s%(message)s"
    return {
        "()": "converge.logging.MultiLineFormatter",
        "fmt": fmt,
        "log_colors": CONSOLE_COLORS if colored else None,
        "reset": colored,
        "no_color": not colored,
        "keep_logger_names": keep_logger_names,
    }


def dict_config(handlers: Mapping[str, object], formatters: Mapping[str, object], root_level: int) -> dict[str, object]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": dict(formatters),
        "handlers": dict(handlers),
        "root": {"handlers": sorted(handlers), "level": level_name(root_level)},
    }


def bootstrap_config(stream: TextIO, level: int = logging.INFO) -> dict[str, object]:
    """
    Used from the start of the process until the command line is parsed
    """
    return dict_config(
        handlers={
            "console": {"class": "logging.StreamHandler", "formatter": "console", "level": level_name(level), "stream": stream}
        },
        formatters={"console": console_formatter(keep_logger_names=True)},
        root_level=level,
    )


def config_from_options(stream: TextIO, options: Options) -> dict[str, object]:
    console_level = convert_log_level(str(options.verbose), cli=True)
    handlers: dict[str, object] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "console",
            "level": level_name(console_level),
            "stream": stream,
        }
    }
    formatters: dict[str, object] = {"console": console_formatter(options.keep_logger_names, options.timed)}
    root_level = console_level
    if options.log_file:
        file_level = convert_log_level(options.log_file_level)
        handlers["logfile"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "formatter": "logfile",
            "level": level_name(file_level),
            "filename": options.log_file,
            "mode": "a+",
        }
        formatters["logfile"] = {"format": "%(asctime)s %(levelname)-8s %(name)-10s %(message)s"}
        root_level = min(root_level, file_level)
    return dict_config(handlers, formatters, root_level)


class ConvergeLoggerConfig:
    """
    Owns the logging setup of a `converge` process. `get_instance` installs the bootstrap config, `apply_options`
    replaces it once the command line is known.
    """

    _instance: Optional["ConvergeLoggerConfig"] = None

    def __init__(self, stream: TextIO = sys.stdout) -> None:
        self._stream = stream
        self._handlers: Sequence[logging.Handler] = self._install(bootstrap_config(stream))
        self._options: Optional[Options] = None

    @classmethod
    def get_instance(cls, stream: TextIO = sys.stdout) -> "ConvergeLoggerConfig":
        """
        There is one instance per process. Asking for it with another stream than it was created with is an error.
        """
        if cls._instance is None:
            cls._instance = cls(stream)
        elif cls._instance._stream is not stream:
            raise Exception("Instance already exists with a different stream")
        return cls._instance

    @classmethod
    def clean_instance(cls) -> None:
        """
        Remove the handlers this instance installed and forget it
        """
        if cls._instance is not None:
            for handler in cls._instance._handlers:
                logging.root.removeHandler(handler)
                handler.close()
        cls._instance = None

    @property
    def handlers(self) -> Sequence[logging.Handler]:
        return self._handlers

    def apply_options(self, options: Options) -> None:
        if self._options is not None:
            raise Exception("Options can only be applied once to a handler.")
        if options.logging_config:
            with open(options.logging_config, encoding="utf-8") as fh:
                config = yaml.safe_load(fh)
            try:
                self._handlers = self._install(config)
            except Exception as e:
                raise Exception(f"Failed to apply the logging config defined in {options.logging_config}.") from e
        else:
            self._handlers = self._install(config_from_options(self._stream, options))
        self._options = options

    @staticmethod
    def _install(config: dict[str, object]) -> Sequence[logging.Handler]:
        """
        :return: The root handlers the config added
        """
        before = set(logging.root.handlers)
        logging.config.dictConfig(config)
        return [handler for handler in logging.root.handlers if handler not in before]


class MultiLineFormatter(colorlog.ColoredFormatter):
    """
    Lines after the first line of a message are indented up to where the message starts. Unless `keep_logger_names` is
    set, converge loggers are shown with a short name.
    """

    def __init__(
        self,
        fmt: Optional[str] = None,
        *,
        log_colors: Optional[LogColors] = None,
        reset: bool = True,
        no_color: bool = False,
        keep_logger_names: bool = True,
    ):
        super().__init__(fmt, log_colors=log_colors, reset=reset, no_color=no_color)
        self.fmt = fmt
        self._keep_logger_names = keep_logger_names
        self._plain = colorlog.ColoredFormatter(fmt=fmt, log_colors=log_colors, reset=False, no_color=True)

    def _prefix_width(self, record: logging.LogRecord) -> int:
        empty = logging.LogRecord(record.name, record.levelno, record.pathname, record.lineno, "", (), None)
        return len(self._plain.format(empty))

    def format(self, record: logging.LogRecord) -> str:
        if not self._keep_logger_names:
            short = short_logger_name(record.name)
            if short != record.name:
                record = logging.makeLogRecord({**record.__dict__, "name": short})
        first, *rest = super().format(record).splitlines(True)
        indent = " " * self._prefix_width(record)
        return first + "".join(indent + line for line in rest)


def short_logger_name(name: str) -> str:
    if name == const.NAME_RESOURCE_ACTION_LOGGER:
        return "resource"
    if name.startswith("converge.deploy"):
        return "executor"
    return name.removeprefix("converge.")
