#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Settings of dnlens that are read from environment variables, and the logging configuration that
depends on them. All variables carry the prefix `DNLENS_`:

- `DNLENS_VERBOSITY`: the log level, either a `LogLevel` name or a verbosity count.
- `DNLENS_PDB_SKIP_VERIFY`: attach PDB source locations even if the PDB id does not match the
  CodeView entry of the module.
"""
from __future__ import annotations

import os
import logging

from enum import IntEnum
from typing import Optional, TypeVar, Generic

_T = TypeVar('_T')

_PREFIX = 'DNLENS_'


class LogLevel(IntEnum):
    """
    The log levels known to dnlens; the standard levels plus `DETACHED`.
    """
    DETACHED = logging.CRITICAL + 100
    """
    The engine is used as a library and nobody is watching a terminal; problems are reported
    only through the model and the correlation result.
    """
    CRITICAL = logging.CRITICAL
    ERROR = logging.ERROR
    WARNING = logging.WARNING
    INFO = logging.INFO
    DEBUG = logging.DEBUG

    @classmethod
    def FromVerbosity(cls, verbosity: int) -> LogLevel:
        """
        Translate the number of `-v` switches into a level; a negative count detaches logging.
        """
        if verbosity < 0:
            return cls.DETACHED
        levels = (cls.WARNING, cls.INFO, cls.DEBUG)
        return levels[min(verbosity, len(levels) - 1)]

    @property
    def verbosity(self) -> int:
        if self >= LogLevel.DETACHED:
            return -1
        for count, level in enumerate((LogLevel.WARNING, LogLevel.INFO, LogLevel.DEBUG)):
            if self >= level:
                return count
        return -1


class DnlensFormatter(logging.Formatter):
    """
    Exposes the attribute `custom_level_name` to the format string, a short lowercase word that
    describes the severity of the record.
    """
    NAMES = {
        logging.CRITICAL : 'failure',
        logging.ERROR    : 'failure',
        logging.WARNING  : 'warning',
        logging.INFO     : 'comment',
        logging.DEBUG    : 'verbose',
    }

    def formatMessage(self, record: logging.LogRecord) -> str:
        record.custom_level_name = self.NAMES.get(record.levelno, record.levelname.lower())
        return super().formatMessage(record)


def logger(name: str) -> logging.Logger:
    """
    Obtain a logger with the dnlens output format. The handler is attached once per logger; the
    level is taken from `DNLENS_VERBOSITY` when it is set.
    """
    log = logging.getLogger(name)
    if not log.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(DnlensFormatter(
            '({asctime}) {custom_level_name} in {name}: {message}',
            style='{',
            datefmt='%H:%M:%S',
        ))
        log.addHandler(stream)
        if (level := environment.verbosity.value) is not None:
            log.setLevel(level)
    log.propagate = False
    return log


def set_log_level(level: LogLevel | int):
    """
    Set the level of every logger that was obtained via `dnlens.lib.environment.logger`.
    """
    for name, log in logging.root.manager.loggerDict.items():
        if name != 'dnlens' and not name.startswith('dnlens.'):
            continue
        if isinstance(log, logging.Logger):
            log.setLevel(level)


class EnvironmentVariableSetting(Generic[_T]):
    key: str
    value: Optional[_T]

    def __init__(self, name: str):
        self.key = F'{_PREFIX}{name}'
        self.value = self.read()

    def raw(self) -> str | None:
        value = os.environ.get(self.key)
        if value is not None:
            value = value.strip()
        return value

    def read(self) -> Optional[_T]:
        return None


class EVBool(EnvironmentVariableSetting[bool]):
    FALSE = frozenset(('', 'no', 'off', 'false'))

    def read(self):
        value = self.raw()
        if value is None:
            return False
        if value.isdigit():
            return int(value) != 0
        return value.lower() not in self.FALSE


class EVLog(EnvironmentVariableSetting[Optional[LogLevel]]):
    def read(self):
        value = self.raw()
        if value is None:
            return None
        if value.isdigit():
            return LogLevel.FromVerbosity(int(value))
        try:
            return LogLevel[value.upper()]
        except KeyError:
            levels = ', '.join(ll.name for ll in LogLevel)
            logging.getLogger(__name__).warning(
                F'ignoring unknown verbosity {value!r} in {self.key}; pick from: {levels}')
            return None


class environment:
    verbosity = EVLog('VERBOSITY')
    pdb_skip_verify = EVBool('PDB_SKIP_VERIFY')

    @classmethod
    def reload(cls):
        """
        Re-read all settings from the process environment.
        """
        for setting in vars(cls).values():
            if isinstance(setting, EnvironmentVariableSetting):
                setting.value = setting.read()
