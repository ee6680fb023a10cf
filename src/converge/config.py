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
from collections import abc
from configparser import ConfigParser, Interpolation
from typing import Callable, Generic, Optional, TypeVar, Union, overload

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "CONVERGE"

MAIN_CONFIG_FILE = "/etc/converge/converge.cfg"
# Read after the config dir, in this order
LOCAL_CONFIG_FILES = ["~/.converge.cfg", ".converge", ".converge.cfg"]


def _normalize_name(name: str) -> str:
    return name.replace("_", "-")


def _get_environment_variable(section: str, name: str) -> str:
    return f"{ENV_PREFIX}_{section}_{name}".replace("-", "_").upper()


def _get_from_env(section: str, name: str) -> Optional[str]:
    return os.environ.get(_get_environment_variable(section, name))


class LenientConfigParser(ConfigParser):
    """
    Option names with underscores and with dashes are the same option
    """

    def optionxform(self, name: str) -> str:
        return super().optionxform(_normalize_name(name))


class Config:
    """
    The configuration of this process: the merged config files, overridden by CONVERGE_<SECTION>_<NAME> environment
    variables. Options are declared with `Option` objects at module level.
    """

    _parser: Optional[ConfigParser] = None
    _config_dir: Optional[str] = None
    _options: dict[str, dict[str, "Option"]] = {}

    @classmethod
    def load_config(
        cls,
        min_c_config_file: Optional[str] = None,
        config_dir: Optional[str] = None,
        main_cfg_file: str = MAIN_CONFIG_FILE,
    ) -> None:
        """
        Read the config files. A file read later overrides the options set by the files before it:
        the main file, the *.cfg files in config_dir in alphabetical order, the local files and finally the file given
        with -c.
        """
        files = [main_cfg_file]
        if config_dir and os.path.isdir(config_dir):
            files.extend(sorted(os.path.join(config_dir, f) for f in os.listdir(config_dir) if f.endswith(".cfg")))
        files.extend(os.path.expanduser(f) for f in LOCAL_CONFIG_FILES)
        if min_c_config_file is not None:
            files.append(min_c_config_file)

        parser = LenientConfigParser(interpolation=Interpolation())
        loaded = parser.read(files)
        LOGGER.debug("Loaded config files %s", ", ".join(loaded) if loaded else "(none)")
        cls._parser = parser
        cls._config_dir = config_dir

    @classmethod
    def _get_instance(cls) -> ConfigParser:
        if cls._parser is None:
            cls.load_config()
        assert cls._parser is not None
        return cls._parser

    @classmethod
    def _reset(cls) -> None:
        cls._parser = None
        cls._config_dir = None

    @overload
    @classmethod
    def get(cls) -> ConfigParser: ...

    @overload
    @classmethod
    def get(cls, section: str, name: str, default_value: Optional[str] = None) -> object: ...

    @classmethod
    def get(
        cls, section: Optional[str] = None, name: Optional[str] = None, default_value: Optional[str] = None
    ) -> object:
        """
        Without arguments, the parser. Otherwise the value of an option, validated when the option is declared.
        """
        parser = cls._get_instance()
        if section is None:
            return parser
        if name is None:
            raise ValueError("A name is required to get a config value")
        name = _normalize_name(name)

        option = cls.validate_option_request(section, name, default_value)
        value = _get_from_env(section, name)
        if value is not None:
            LOGGER.debug("Config %s.%s comes from the environment", section, name)
        else:
            value = parser.get(section, name, fallback=default_value)
        return option.validate(value) if option is not None else value

    @classmethod
    def is_set(cls, section: str, name: str) -> bool:
        """
        True when the option has a value in a config file or in the environment
        """
        name = _normalize_name(name)
        return _get_from_env(section, name) is not None or cls._get_instance().has_option(section, name)

    @classmethod
    def set(cls, section: str, name: str, value: str) -> None:
        """
        Override the value of an option for the rest of this process
        """
        parser = cls._get_instance()
        if not parser.has_section(section):
            parser.add_section(section)
        parser.set(section, _normalize_name(name), value)

    @classmethod
    def register_option(cls, option: "Option") -> None:
        cls._options.setdefault(option.section, {})[option.name] = option

    @classmethod
    def get_config_options(cls) -> dict[str, dict[str, "Option"]]:
        return cls._options

    @classmethod
    def validate_option_request(cls, section: str, name: str, default_value: Optional[str]) -> Optional["Option"]:
        """
        The declared option for a lookup, None for an undeclared one. Both are logged as a warning, as is a default
        that differs from the declared one.
        """
        options = cls._options.get(section)
        if options is None:
            LOGGER.warning("Config section %s not defined", section)
            return None
        option = options.get(name)
        if option is None:
            LOGGER.warning("Config name %s not defined in section %s", name, section)
            return None
        if default_value is not None and option.get_default_value() != default_value:
            LOGGER.warning(
                "Inconsistent default value for option %s.%s: defined as %s, got %s",
                section,
                name,
                option.default,
                default_value,
            )
        return option


# The docstring of a validator names the type of the option in `converge-cli config list`


def is_int(value: Union[int, str]) -> int:
    """int"""
    return int(value)


def is_float(value: Union[float, str]) -> float:
    """float"""
    return float(value)


def is_positive_int(value: Union[int, str]) -> int:
    """positive int"""
    result = int(value)
    if result < 1:
        raise ValueError("Expected a positive integer, got %s" % value)
    return result


def is_bool(value: Union[bool, str]) -> bool:
    """bool (true, false, yes, no, on, off, 1, 0)"""
    if isinstance(value, bool):
        return value
    states: abc.Mapping[str, bool] = Config._get_instance().BOOLEAN_STATES
    try:
        return states[value.lower()]
    except KeyError:
        raise ValueError("Not a boolean: %s" % value) from None


def is_list(value: Union[str, list[str]]) -> list[str]:
    """comma separated list"""
    if isinstance(value, list):
        return value
    return [item.strip() for item in value.split(",")] if value else []


def is_str(value: str) -> str:
    """str"""
    return str(value)


T = TypeVar("T")


class Option(Generic[T]):
    """
    A config option. Declare options at module level so they are registered when their module is imported.

    :param section: The section in the config file
    :param name: The name in the section, `-` and `_` are the same
    :param default: The default value, or a function that returns it. The docstring of such a function describes the
        default in `converge-cli config list`.
    :param documentation: What the option does
    :param validator: Turns the configured string into a value of the right type, raises ValueError when it can't
    """

    def __init__(
        self,
        section: str,
        name: str,
        default: Union[T, None, Callable[[], T]],
        documentation: str,
        validator: Callable[[str], T] = is_str,
    ) -> None:
        self.section = section
        self.name = _normalize_name(name)
        self.default = default
        self.documentation = documentation
        self.validator = validator
        Config.register_option(self)

    def get(self) -> T:
        value = _get_from_env(self.section, self.name)
        if value is None:
            value = Config._get_instance().get(self.section, self.name, fallback=self.get_default_value())
        return self.validate(value)

    def get_environment_variable(self) -> str:
        return _get_environment_variable(self.section, self.name)

    def get_type(self) -> Optional[str]:
        return self.validator.__doc__

    def get_default_desc(self) -> str:
        if callable(self.default):
            return str(self.default.__doc__)
        return f"``{self.default}``"

    def validate(self, value: str) -> T:
        return self.validator(value)

    def get_default_value(self) -> Optional[T]:
        return self.default() if callable(self.default) else self.default

    def set(self, value: str) -> None:
        Config.set(self.section, self.name, value)


#############################
# Config
#
# Global config options are defined here
#############################
state_file = Option(
    "config",
    "state-file",
    "converge.state.json",
    "The file the state snapshot is stored in. Relative paths are relative to the working directory.",
    is_str,
)

#############################
# Executor
#############################
executor_parallelism = Option(
    "executor", "parallelism", 10, "The maximum number of resources that are applied concurrently", is_positive_int
)
executor_retry_attempts = Option(
    "executor",
    "retry-attempts",
    3,
    "The number of times a resource action is retried after a transient provider error",
    is_int,
)
executor_retry_backoff = Option(
    "executor",
    "retry-backoff",
    1.0,
    "The delay in seconds before the first retry of a resource action. Each next retry doubles the delay.",
    is_float,
)
executor_retry_max_backoff = Option(
    "executor", "retry-max-backoff", 30.0, "The maximum delay in seconds between two retries of a resource action", is_float
)
executor_fail_fast = Option(
    "executor",
    "fail-fast",
    False,
    "Stop starting new resource actions as soon as one resource failed to apply. Pending resources are cancelled.",
    is_bool,
)

#############################
# Providers
#############################
provider_modules = Option(
    "providers",
    "modules",
    "converge.providers.local",
    "Comma separated list of python modules that register resource handlers. They are imported before a plan is made.",
    is_list,
)

local_provider_root = Option(
    "local_provider",
    "root",
    ".converge-local",
    "The directory in which the local provider stores the objects it manages",
    is_str,
)
