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

import io
import logging

import pytest

from converge import const
from converge.logging import ConvergeLoggerConfig, MultiLineFormatter, Options, convert_log_level


@pytest.mark.parametrize(
    "level, cli, expected",
    [
        ("0", True, logging.WARNING),
        ("ERROR", True, logging.WARNING),
        ("0", False, logging.ERROR),
        ("2", True, logging.INFO),
        ("3", True, logging.DEBUG),
        ("9", True, const.LOG_LEVEL_TRACE),
        ("DEBUG", False, logging.DEBUG),
    ],
)
def test_convert_log_level(level, cli, expected):
    assert convert_log_level(level, cli=cli) == expected


def test_convert_unknown_log_level():
    with pytest.raises(ValueError):
        convert_log_level("LOUD")


def test_multi_line_formatter():
    formatter = MultiLineFormatter("%(name)-12s%(levelname)-8s%(message)s", reset=False, no_color=True, keep_logger_names=False)
    record = logging.LogRecord("converge.diff", logging.INFO, __file__, 1, "line1\nline2", (), None)
    assert formatter.format(record) == "diff        INFO    line1\n" + " " * 20 + "line2"

    record = logging.LogRecord(const.NAME_RESOURCE_ACTION_LOGGER, logging.INFO, __file__, 1, "created", (), None)
    assert formatter.format(record) == "resource    INFO    created"

    record = logging.LogRecord("converge.deploy.executor", logging.INFO, __file__, 1, "retrying", (), None)
    assert formatter.format(record) == "executor    INFO    retrying"


def test_keep_logger_names():
    formatter = MultiLineFormatter("%(name)s %(message)s", reset=False, no_color=True, keep_logger_names=True)
    record = logging.LogRecord("converge.diff", logging.INFO, __file__, 1, "message", (), None)
    assert formatter.format(record) == "converge.diff message"


def test_console_verbosity():
    stream = io.StringIO()
    config = ConvergeLoggerConfig.get_instance(stream)
    config.apply_options(Options(verbose=2))
    logger = logging.getLogger("converge.test")
    logger.debug("not shown")
    logger.info("shown")
    output = stream.getvalue()
    assert "shown" in output
    assert "not shown" not in output
    assert "test" in output

    with pytest.raises(Exception):
        config.apply_options(Options(verbose=3))


def test_log_file(tmp_path):
    stream = io.StringIO()
    log_file = tmp_path / "converge.log"
    config = ConvergeLoggerConfig.get_instance(stream)
    config.apply_options(Options(verbose=1, log_file=str(log_file), log_file_level="DEBUG"))
    logger = logging.getLogger("converge.test")
    logger.debug("details")
    logger.warning("attention")
    for handler in config.handlers:
        handler.flush()

    assert "details" not in stream.getvalue()
    assert "attention" in stream.getvalue()
    content = log_file.read_text()
    assert "DEBUG" in content
    assert "details" in content
    assert "attention" in content


def test_logging_config_file(tmp_path):
    log_file = tmp_path / "custom.log"
    config_file = tmp_path / "logging.yaml"
    config_file.write_text(
        f"""
version: 1
disable_existing_loggers: false
formatters:
  plain:
    format: "%(levelname)s %(message)s"
handlers:
  file:
    class: logging.FileHandler
    filename: {log_file}
    formatter: plain
root:
  level: INFO
  handlers: [file]
"""
    )
    config = ConvergeLoggerConfig.get_instance(io.StringIO())
    config.apply_options(Options(logging_config=str(config_file)))
    logging.getLogger("converge.test").info("to the file")
    for handler in config.handlers:
        handler.flush()
    assert "INFO to the file\n" in log_file.read_text()


def test_instance_is_bound_to_its_stream():
    stream = io.StringIO()
    assert ConvergeLoggerConfig.get_instance(stream) is ConvergeLoggerConfig.get_instance(stream)
    with pytest.raises(Exception):
        ConvergeLoggerConfig.get_instance(io.StringIO())
