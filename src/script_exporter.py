#!/usr/bin/env python3

"""
Script Exporter

Description:
---------------------

Runs a directory of shell scripts on an interval and exposes whatever
they print as Prometheus text exposition:
- Recursive script discovery with per-path access error reporting
- Concurrent script execution with a per-script timeout
- In-memory cache of the last result per script
- Status metrics for exit code, file access and output read errors
- Optional health check endpoint with exporter self-metrics
- Systemd integration

Usage:
---------------------
1. Put scripts (*.sh) under the scripts directory (default /scripts)
2. Optionally create a YAML configuration file and pass it with --config
3. Run `script-exporter` directly or via systemd service
4. Scrape metrics at http://localhost:9000/metrics

Configuration:
---------------------

exporter:
    listen_address: ""      # Interface to bind, empty for all
    port: 9000              # Metrics port
    metrics_path: /metrics  # Path serving the script exposition
    health_port: 0          # Health check port, 0 disables it
    collection:
        interval_sec: 300           # Refresh interval
        timeout_sec: 200            # Per-script execution timeout
        shutdown_timeout_sec: 30    # Grace period for running scripts on shutdown
    scripts:
        path: /scripts              # Root directory walked for scripts
        extensions: [".sh"]         # Recognized script extensions
        interpreter: bash           # Program used to run each script
        max_line_bytes: 65536       # Longest accepted output line
    exposition:
        prefix: ""                  # Prepended to the status metric name
        labels: {}                  # Extra labels added to status metrics
    logging:
        level: "INFO"
        console_level: "INFO"
        file: null                  # Optional rotating log file
        file_level: "DEBUG"
        journal_level: "WARNING"
        max_bytes: 10485760
        backup_count: 3
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

Command line flags override the file: --interval, --timeout, --path,
--port, --prefix, --labels, --log-level.

Exposition Format:
---------------------
For every script S:

    script_exporter_error{error_name="script_exit_code",script_name="S"} <int>
    script_exporter_error{error_name="file_access_error",script_name="S"} <0|1>
    script_exporter_error{error_name="json_parse_error",script_name="S"} <0|1>
    <non-empty stdout lines of S, verbatim>

Notes:
---------------------
- Script output is not validated beyond dropping empty lines
- A timed out or signalled script keeps its previous result
- An empty scripts directory is fatal
- All timestamps are in UTC
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import argparse
import asyncio
import errno
import json
import logging
import os
import re
import signal
import socket
import stat
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional,
    Set, Tuple, Union
)
from wsgiref.simple_server import WSGIRequestHandler, make_server

# Third party imports
from prometheus_client import (
    CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest
)
from prometheus_client.exposition import ThreadingWSGIServer
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

__version__ = '1.0.0'

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ExporterConfigurationError(ExporterError):
    """Error in exporter configuration."""
    pass

class NoScriptsFoundError(ExporterError):
    """The scripts directory holds nothing to run."""
    pass

class ScriptExecutionError(ExporterError):
    """Script did not terminate normally; its result is unusable."""
    pass

class ScriptTimeoutError(ScriptExecutionError):
    """Script exceeded its execution timeout and was killed."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')
METRIC_NAME_RE = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')
RESERVED_LABELS = frozenset({'error_name', 'script_name'})

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file locations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())
    config_file: Optional[Path] = None

    @property
    def script_dir(self) -> Path:
        """Directory containing the executable."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        return 'script_exporter'

    @property
    def config_path(self) -> Optional[Path]:
        """Configuration file to load, if any.

        An explicitly given file must exist. Without one, a
        ``<name>.yml`` next to the executable is used when present.
        """
        if self.config_file is not None:
            path = Path(self.config_file)
            if path.is_file() and os.access(path, os.R_OK):
                return path
            raise FileNotFoundError(f"Config file {path} not found")

        path = self.script_dir / f"{self.base_name}.yml"
        if path.is_file() and os.access(path, os.R_OK):
            return path
        return None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_listen_address(value: Union[str, int]) -> Tuple[str, int]:
    """Split ``9000``, ``:9000`` or ``host:9000`` into host and port."""
    text = str(value).strip()
    host, sep, port = text.rpartition(':')
    if not sep:
        host = ''
    try:
        return host.strip('[]'), int(port)
    except ValueError:
        raise ExporterConfigurationError(f"Invalid listen address '{value}'")

def parse_labels(value: str) -> Dict[str, str]:
    """Parse ``name=value,name2=value2`` into a label dictionary."""
    labels = {}
    for item in value.split(','):
        item = item.strip()
        if not item:
            continue
        name, sep, label_value = item.partition('=')
        if not sep:
            raise ExporterConfigurationError(
                f"Invalid label '{item}', expected name=value"
            )
        labels[name.strip()] = label_value.strip().strip('"')
    return labels

class ProgramConfig:
    """Program configuration with defaults, file loading and validation."""

    DEFAULT_LISTEN_ADDRESS = ''
    DEFAULT_PORT = 9000
    DEFAULT_METRICS_PATH = '/metrics'
    DEFAULT_HEALTH_PORT = 0
    DEFAULT_INTERVAL = 300
    DEFAULT_TIMEOUT = 200
    DEFAULT_SHUTDOWN_TIMEOUT = 30
    DEFAULT_SCRIPTS_PATH = '/scripts'
    DEFAULT_EXTENSIONS = ['.sh']
    DEFAULT_INTERPRETER = 'bash'
    DEFAULT_MAX_LINE_BYTES = 65536
    DEFAULT_PREFIX = ''

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, source: ProgramSource, overrides: Optional[Dict[str, Any]] = None):
        """Initialize configuration with defaults.

        Args:
            source: Program source information
            overrides: Exporter section values taking precedence over the file
        """
        self._source = source
        self._overrides = overrides or {}
        self._config = {'exporter': self._get_exporter_defaults()}
        self._loaded_from: Optional[Path] = None
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'listen_address': self.DEFAULT_LISTEN_ADDRESS,
            'port': self.DEFAULT_PORT,
            'metrics_path': self.DEFAULT_METRICS_PATH,
            'health_port': self.DEFAULT_HEALTH_PORT,
            'collection': {
                'interval_sec': self.DEFAULT_INTERVAL,
                'timeout_sec': self.DEFAULT_TIMEOUT,
                'shutdown_timeout_sec': self.DEFAULT_SHUTDOWN_TIMEOUT
            },
            'scripts': {
                'path': self.DEFAULT_SCRIPTS_PATH,
                'extensions': list(self.DEFAULT_EXTENSIONS),
                'interpreter': self.DEFAULT_INTERPRETER,
                'max_line_bytes': self.DEFAULT_MAX_LINE_BYTES
            },
            'exposition': {
                'prefix': self.DEFAULT_PREFIX,
                'labels': {}
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Load the configuration file, apply overrides and validate.

        Raises:
            ExporterConfigurationError: If the file is unreadable or invalid
        """
        new_config = self._get_exporter_defaults()

        try:
            path = self._source.config_path
        except FileNotFoundError as e:
            raise ExporterConfigurationError(str(e))

        if path is not None:
            try:
                with open(path) as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ExporterConfigurationError(f"Failed to load config file {path}: {e}")

            if not isinstance(file_config, dict):
                raise ExporterConfigurationError("Configuration file must contain a mapping")
            exporter = file_config.get('exporter') or {}
            if not isinstance(exporter, dict):
                raise ExporterConfigurationError("Exporter section must be a dictionary")
            new_config = self._merge_with_defaults(new_config, exporter)

        new_config = self._merge_with_defaults(new_config, self._overrides)
        self._validate_exporter_section(new_config)

        self._config = {'exporter': new_config}
        self._loaded_from = path

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    @staticmethod
    def _is_positive_number(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0

    @staticmethod
    def _is_port(value: Any, allow_zero: bool = False) -> bool:
        if not isinstance(value, int) or isinstance(value, bool):
            return False
        return (allow_zero and value == 0) or 1 <= value <= 65535

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Validation of the merged exporter configuration."""
        if not self._is_port(config['port'], allow_zero=True):
            raise ExporterConfigurationError(f"Invalid port {config['port']}")
        if not self._is_port(config['health_port'], allow_zero=True):
            raise ExporterConfigurationError(f"Invalid health_port {config['health_port']}")
        if config['health_port'] and config['health_port'] == config['port']:
            raise ExporterConfigurationError("port and health_port must be different")

        metrics_path = config['metrics_path']
        if not isinstance(metrics_path, str) or not metrics_path.startswith('/'):
            raise ExporterConfigurationError(f"Invalid metrics_path {metrics_path!r}")

        collection = config['collection']
        for key in ('interval_sec', 'timeout_sec', 'shutdown_timeout_sec'):
            if not self._is_positive_number(collection.get(key)):
                raise ExporterConfigurationError(f"collection.{key} must be a positive number")

        scripts = config['scripts']
        if not scripts.get('path'):
            raise ExporterConfigurationError("scripts.path must be set")
        extensions = scripts.get('extensions')
        if isinstance(extensions, str):
            extensions = [extensions]
            scripts['extensions'] = extensions
        if not extensions or not all(isinstance(ext, str) and ext for ext in extensions):
            raise ExporterConfigurationError("scripts.extensions must be a non-empty list")
        if not scripts.get('interpreter'):
            raise ExporterConfigurationError("scripts.interpreter must be set")
        if not isinstance(scripts.get('max_line_bytes'), int) or scripts['max_line_bytes'] < 1:
            raise ExporterConfigurationError("scripts.max_line_bytes must be a positive integer")

        exposition = config['exposition']
        prefix = exposition.get('prefix') or ''
        if not METRIC_NAME_RE.match(f"{prefix}{ExpositionRenderer.STATUS_METRIC}"):
            raise ExporterConfigurationError(f"Invalid metric name prefix {prefix!r}")
        labels = exposition.get('labels') or {}
        if not isinstance(labels, dict):
            raise ExporterConfigurationError("exposition.labels must be a dictionary")
        for name in labels:
            if not isinstance(name, str) or not LABEL_NAME_RE.match(name):
                raise ExporterConfigurationError(f"Invalid label name {name!r}")
            if name in RESERVED_LABELS:
                raise ExporterConfigurationError(f"Label name {name!r} is reserved")

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def start_time(self) -> datetime:
        return self._start_time

    @property
    def loaded_from(self) -> Optional[Path]:
        """Path of the configuration file in use, if any."""
        return self._loaded_from

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def collection(self) -> Dict[str, Any]:
        return self.exporter['collection']

    @property
    def scripts(self) -> Dict[str, Any]:
        return self.exporter['scripts']

    @property
    def logging(self) -> Dict[str, Any]:
        return self.exporter['logging']

    @property
    def listen_address(self) -> str:
        return self.exporter.get('listen_address') or ''

    @property
    def port(self) -> int:
        """Get metrics port number."""
        return self.exporter['port']

    @property
    def health_port(self) -> int:
        """Get health check port number, 0 when disabled."""
        return self.exporter['health_port']

    @property
    def metrics_path(self) -> str:
        return self.exporter['metrics_path']

    @property
    def interval(self) -> float:
        """Get refresh interval in seconds."""
        return self.collection['interval_sec']

    @property
    def timeout(self) -> float:
        """Get per-script timeout in seconds."""
        return self.collection['timeout_sec']

    @property
    def shutdown_timeout(self) -> float:
        return self.collection['shutdown_timeout_sec']

    @property
    def scripts_path(self) -> Path:
        return Path(self.scripts['path'])

    @property
    def extensions(self) -> Tuple[str, ...]:
        return tuple(self.scripts['extensions'])

    @property
    def interpreter(self) -> str:
        return self.scripts['interpreter']

    @property
    def max_line_bytes(self) -> int:
        return self.scripts['max_line_bytes']

    @property
    def prefix(self) -> str:
        return self.exporter['exposition'].get('prefix') or ''

    @property
    def labels(self) -> Dict[str, str]:
        labels = self.exporter['exposition'].get('labels') or {}
        return {name: str(value) for name, value in labels.items()}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Logger adding a verbose level between DEBUG and INFO."""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with deferred evaluation."""
            if not ProgramLogger.VERBOSE_DEBUG or not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            exc_info = kwargs.pop('exc_info', None)
            if callable(msg):
                message = msg(*args, **kwargs) if (args or kwargs) else msg()
            elif args or kwargs:
                message = msg.format(*args, **kwargs)
            else:
                message = msg
            self.log(ProgramLogger.VERBOSE_LEVEL, message, exc_info=exc_info, stacklevel=2)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Loaded program configuration
        """
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def level(self) -> str:
        """Get current log level."""
        return logging.getLevelName(self._logger.level)

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_formatter(self) -> logging.Formatter:
        log_settings = self.config.logging
        return logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            If a handler fails to set up, the ones already added stay
            and a console handler is guaranteed.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self.config.logging
        logger.setLevel(log_settings['level'])
        formatter = self._get_formatter()

        try:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            if log_settings.get('file'):
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler

            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}", file=sys.stderr)

        return logger

    def set_level(self, level: Union[str, int]) -> None:
        """Set log level for the logger and all handlers."""
        self._logger.setLevel(level)
        for handler in self._logger.handlers:
            handler.setLevel(level)

    def close(self) -> None:
        """Detach and close all handlers."""
        for name in list(self._handlers):
            handler = self._handlers.pop(name)
            self._logger.removeHandler(handler)
            handler.close()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class CollectionResult:
    """Last known outcome of running one script.

    Attributes:
        metric_lines: Non-empty stdout lines, verbatim and in order
        exit_status: Exit code of the last execution
        access_failed: Script path could not be read or walked
        parse_failed: Reading the output stream failed part way
    """
    metric_lines: Tuple[str, ...] = ()
    exit_status: int = 0
    access_failed: bool = False
    parse_failed: bool = False

    @classmethod
    def access_failure(cls) -> 'CollectionResult':
        return cls(access_failed=True)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for script collection, reported by the health check.

    Attributes:
        cycles (int): Refresh cycles started
        runs_started (int): Script executions launched
        runs_completed (int): Executions that produced a result
        runs_failed (int): Executions discarded (timeout, signal, start failure)
        timeouts (int): Executions killed for exceeding the timeout
        access_errors (int): Paths reported unreadable during discovery
        last_cycle_time (float): Duration of the last discovery pass
        last_cycle_datetime (datetime): Start of the last refresh cycle
    """
    cycles: int = 0
    runs_started: int = 0
    runs_completed: int = 0
    runs_failed: int = 0
    timeouts: int = 0
    access_errors: int = 0
    last_cycle_time: float = 0
    last_cycle_datetime: Optional[datetime] = None

    @property
    def in_flight(self) -> int:
        return self.runs_started - self.runs_completed - self.runs_failed

    def is_healthy(self) -> bool:
        """Healthy once at least one refresh cycle has run."""
        return self.cycles > 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterMetrics:
    """Exporter self-metrics, kept apart from the script exposition."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.cycles = Counter(
            'script_exporter_refresh_cycles',
            'Number of refresh cycles started',
            registry=self.registry
        )
        self.runs = Counter(
            'script_exporter_script_runs',
            'Script executions by outcome',
            labelnames=['outcome'],
            registry=self.registry
        )
        self.last_refresh = Gauge(
            'script_exporter_last_refresh_timestamp_seconds',
            'Unix timestamp of the last refresh cycle',
            registry=self.registry
        )
        self.cached_scripts = Gauge(
            'script_exporter_cached_scripts',
            'Number of scripts with a cached result',
            registry=self.registry
        )
        self.uptime = Gauge(
            'script_exporter_uptime_seconds',
            'Time since service start in seconds',
            registry=self.registry
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Result Cache
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ResultCache:
    """Thread-safe store of the latest result per script name.

    Writers hold the lock only for a single assignment. Readers take a
    copy under the same lock and work on it, so rendering never sees a
    half-written entry and never holds up the writers.
    """

    def __init__(self):
        self._entries: Dict[str, CollectionResult] = {}
        self._lock = threading.Lock()

    def put(self, identity: str, result: CollectionResult) -> None:
        """Replace the entry for ``identity``."""
        with self._lock:
            self._entries[identity] = result

    def get(self, identity: str) -> Optional[CollectionResult]:
        with self._lock:
            return self._entries.get(identity)

    def snapshot(self) -> Dict[str, CollectionResult]:
        """Point-in-time copy of all entries."""
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._entries

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Script Discovery
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptLocator:
    """Walks the scripts directory and yields runnable script paths."""

    def __init__(
        self,
        root: Path,
        extensions: Iterable[str],
        logger: logging.Logger
    ):
        self.root = Path(root)
        self.extensions = tuple(extensions)
        self.logger = logger
        self.found = 0
        self.errors = 0

    def locate(self, on_error: Callable[[str, OSError], None]) -> Iterator[Path]:
        """Lazily yield script files under the root, depth first.

        Args:
            on_error: Called with the path and error for every entry that
                cannot be read; the walk carries on afterwards

        The ``found`` and ``errors`` counters describe the last walk once
        the generator is exhausted.
        """
        self.found = 0
        self.errors = 0

        def report(path: str, error: OSError) -> None:
            self.errors += 1
            self.logger.warning(f"File access error {path}: {error}")
            on_error(path, error)

        def walk_error(error: OSError) -> None:
            report(str(error.filename or self.root), error)

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=walk_error):
            dirnames.sort()
            for name in sorted(filenames):
                if not name.endswith(self.extensions):
                    continue

                path = Path(dirpath) / name
                try:
                    st = path.stat()
                    if not os.access(path, os.R_OK):
                        raise PermissionError(errno.EACCES, os.strerror(errno.EACCES), str(path))
                except OSError as e:
                    report(str(path), e)
                    continue

                if not stat.S_ISREG(st.st_mode):
                    self.logger.verbose(f"Skipping {path}: not a regular file")
                    continue

                self.found += 1
                yield path

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Script Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptRunner:
    """Executes one script with a timeout and turns its output into a result."""

    KILL_GRACE = 5  # seconds to reap a killed process group

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    async def run(self, script_path: Path) -> CollectionResult:
        """Run ``script_path`` and collect its metric lines.

        Returns:
            Result for any normal exit, zero or not

        Raises:
            ScriptTimeoutError: The script ran past the timeout and was killed
            ScriptExecutionError: The script could not start or died by signal
        """
        self.logger.verbose(f"Executing script: {script_path}")
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.interpreter,
                str(script_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.config.max_line_bytes,
                start_new_session=True
            )
        except OSError as e:
            raise ScriptExecutionError(f"Error executing script {script_path}: {e}") from e

        try:
            lines, parse_failed, stderr = await asyncio.wait_for(
                self._communicate(process, script_path),
                timeout=self.config.timeout
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ScriptTimeoutError(
                f"Script {script_path} timed out after {self.config.timeout}s"
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        returncode = process.returncode
        execution_time = time.monotonic() - start_time

        if returncode is None or returncode < 0:
            raise ScriptExecutionError(
                f"Script {script_path} terminated abnormally: {self._describe_signal(returncode)}"
            )

        if returncode != 0:
            detail = stderr.decode(errors='replace').strip()
            self.logger.warning(
                f"Script {script_path} exited with status {returncode}"
                + (f": {detail}" if detail else "")
            )

        self.logger.verbose(
            f"Script {script_path} finished in {execution_time:.3f}s "
            f"with status {returncode}, {len(lines)} lines"
        )
        return CollectionResult(
            metric_lines=tuple(lines),
            exit_status=returncode,
            parse_failed=parse_failed
        )

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        script_path: Path
    ) -> Tuple[List[str], bool, bytes]:
        """Read stdout line by line and stderr fully, then reap the process."""
        (lines, parse_failed), stderr = await asyncio.gather(
            self._scan_lines(process.stdout, script_path),
            process.stderr.read()
        )
        await process.wait()
        return lines, parse_failed, stderr

    async def _scan_lines(
        self,
        stream: asyncio.StreamReader,
        script_path: Path
    ) -> Tuple[List[str], bool]:
        """Collect non-empty lines until EOF or the first over-long line.

        Bytes are not validated: anything that is not UTF-8 is carried as
        surrogate escapes and written back unchanged on exposition.
        """
        lines: List[str] = []
        try:
            async for raw in stream:
                line = raw.decode('utf-8', 'surrogateescape').rstrip('\n')
                if line.endswith('\r'):
                    line = line[:-1]
                if line:
                    lines.append(line)
        except ValueError as e:
            # Line over max_line_bytes; keep what was read so far
            self.logger.error(f"Error scanning output from {script_path}: {e}")
            await stream.read()
            return lines, True
        return lines, False

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Kill the script together with anything it spawned."""
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.KILL_GRACE)
        except asyncio.TimeoutError:
            self.logger.warning(f"Process {process.pid} did not exit after SIGKILL")

    @staticmethod
    def _describe_signal(returncode: Optional[int]) -> str:
        if returncode is None:
            return "no exit status"
        try:
            return f"killed by {signal.Signals(-returncode).name}"
        except ValueError:
            return f"killed by signal {-returncode}"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Refresh Scheduling
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RefreshScheduler:
    """Keeps the cache warm by re-running every script on an interval.

    Each cycle walks the scripts directory and starts one task per script
    without waiting for any of them. A slow script from the previous cycle
    may still be running when the next one starts; both runs write to the
    cache and the last write wins. Tasks are only tracked so they are not
    garbage collected mid-flight and can be drained on shutdown.
    """

    def __init__(
        self,
        config: ProgramConfig,
        cache: ResultCache,
        locator: ScriptLocator,
        runner: ScriptRunner,
        logger: logging.Logger,
        stats: Optional[CollectionStats] = None,
        metrics: Optional[ExporterMetrics] = None
    ):
        self.config = config
        self.cache = cache
        self.locator = locator
        self.runner = runner
        self.logger = logger
        self.stats = stats or CollectionStats()
        self.metrics = metrics or ExporterMetrics()
        self._pending: Set[asyncio.Task] = set()
        self._in_flight: Dict[str, int] = {}

    @property
    def pending(self) -> int:
        """Number of script runs still in flight."""
        return len(self._pending)

    async def refresh(self) -> int:
        """Run one discovery pass and launch a runner per script.

        Returns:
            Number of scripts launched

        Raises:
            NoScriptsFoundError: Nothing to run and no access errors seen
        """
        cycle_start = time.monotonic()
        self.stats.cycles += 1
        self.stats.last_cycle_datetime = self.config.now_utc()
        self.metrics.cycles.inc()
        self.metrics.last_refresh.set(self.stats.last_cycle_datetime.timestamp())

        scripts, failures = await asyncio.to_thread(self._discover)
        for path in failures:
            self._record_access_failure(path)
        for script_path in scripts:
            self._launch(script_path)
        launched = len(scripts)

        if launched == 0 and not failures:
            raise NoScriptsFoundError(
                f"No scripts found in directory {self.config.scripts_path}"
            )

        self.stats.last_cycle_time = time.monotonic() - cycle_start
        self.logger.debug(
            f"Refresh cycle {self.stats.cycles} launched {launched} scripts, "
            f"{len(failures)} access errors, {self.pending} runs in flight"
        )
        return launched

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Refresh every interval until ``shutdown_event`` is set.

        The first refresh is expected to have been done by the caller.
        """
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                try:
                    await self.refresh()
                except NoScriptsFoundError:
                    raise
                except Exception as e:
                    self.logger.error(f"Error in refresh cycle: {e}", exc_info=True)

    async def wait_pending(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight runs; True if all finished in time."""
        if not self._pending:
            return True
        _, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        return not still_pending

    async def cancel_pending(self) -> None:
        """Cancel in-flight runs, killing their processes."""
        tasks = set(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _discover(self) -> Tuple[List[Path], List[str]]:
        """Walk the scripts directory; runs in a worker thread."""
        failures: List[str] = []
        scripts = list(self.locator.locate(lambda path, error: failures.append(path)))
        return scripts, failures

    def _record_access_failure(self, path: str) -> None:
        self.stats.access_errors += 1
        self.cache.put(os.path.basename(path.rstrip(os.sep)) or path, CollectionResult.access_failure())

    def _launch(self, script_path: Path) -> None:
        task = asyncio.create_task(self._collect(script_path), name=f"script:{script_path.name}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _collect(self, script_path: Path) -> None:
        """Run one script and store its result, absorbing every failure."""
        name = script_path.name
        if self._in_flight.get(name):
            self.logger.debug(f"Script {name} still running from a previous cycle")
        self._in_flight[name] = self._in_flight.get(name, 0) + 1
        self.stats.runs_started += 1

        try:
            result = await self.runner.run(script_path)
        except ScriptTimeoutError as e:
            self.logger.error(str(e))
            self.stats.timeouts += 1
            self.stats.runs_failed += 1
            self.metrics.runs.labels(outcome='timeout').inc()
            return
        except ScriptExecutionError as e:
            self.logger.error(str(e))
            self.stats.runs_failed += 1
            self.metrics.runs.labels(outcome='error').inc()
            return
        except Exception as e:
            self.logger.error(f"Collection failed for {script_path}: {e}", exc_info=True)
            self.stats.runs_failed += 1
            self.metrics.runs.labels(outcome='error').inc()
            return
        finally:
            self._in_flight[name] -= 1
            if not self._in_flight[name]:
                del self._in_flight[name]

        self.cache.put(name, result)
        self.stats.runs_completed += 1
        if result.parse_failed:
            outcome = 'parse_error'
        elif result.exit_status != 0:
            outcome = 'nonzero_exit'
        else:
            outcome = 'success'
        self.metrics.runs.labels(outcome=outcome).inc()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Exposition
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def escape_label_value(value: str) -> str:
    """Escape a label value for the text exposition format."""
    return value.replace('\\', r'\\').replace('\n', r'\n').replace('"', r'\"')

class ExpositionRenderer:
    """Serializes cached results into the text exposition format."""

    STATUS_METRIC = 'script_exporter_error'

    def __init__(self, prefix: str = '', labels: Optional[Mapping[str, str]] = None):
        self.metric_name = f"{prefix}{self.STATUS_METRIC}"
        self._extra_labels = ''.join(
            f',{name}="{escape_label_value(str(value))}"'
            for name, value in sorted((labels or {}).items())
        )

    def render(self, snapshot: Mapping[str, CollectionResult]) -> str:
        """Render three status lines then the raw lines of every script.

        Scripts are emitted in name order so an unchanged cache always
        renders to the same document.
        """
        lines: List[str] = []
        for name in sorted(snapshot):
            result = snapshot[name]
            script = escape_label_value(name)
            for error_name, value in (
                ('script_exit_code', result.exit_status),
                ('file_access_error', int(result.access_failed)),
                ('json_parse_error', int(result.parse_failed))
            ):
                lines.append(
                    f'{self.metric_name}{{error_name="{error_name}",'
                    f'script_name="{script}"{self._extra_labels}}} {value}'
                )
            lines.extend(result.metric_lines)
        return ''.join(f"{line}\n" for line in lines)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Servers
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SilentHandler(WSGIRequestHandler):
    """Request handler that does not write access logs to stderr."""

    def log_message(self, format, *args):
        pass

class BackgroundServer:
    """WSGI application served from a daemon thread."""

    thread_name = 'HTTPServer'

    def __init__(self, host: str, port: int, logger: logging.Logger):
        self.host = host
        self.port = port
        self.logger = logger
        self._server = None
        self._thread = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def server_port(self) -> Optional[int]:
        """Bound port, useful when configured with port 0."""
        return self._server.server_port if self._server else None

    def wsgi_app(self, environ, start_response):
        raise NotImplementedError

    def start(self) -> bool:
        """Bind and serve in a separate thread."""
        try:
            self._server = make_server(
                self.host,
                self.port,
                self.wsgi_app,
                server_class=ThreadingWSGIServer,
                handler_class=SilentHandler
            )
        except OSError as e:
            self.logger.error(f"Failed to start {self.thread_name} on port {self.port}: {e}")
            self._server = None
            return False

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=self.thread_name,
            daemon=True
        )
        self._thread.start()
        self.logger.info(f"Started {self.thread_name} on port {self.server_port}")
        return True

    def stop(self) -> None:
        if not self._server:
            return

        try:
            self.logger.info(f"Stopping {self.thread_name}")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning(f"{self.thread_name} thread failed to stop")
        except Exception as e:
            self.logger.error(f"Error stopping {self.thread_name}: {e}")
        finally:
            self._server = None
            self._thread = None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsServer(BackgroundServer):
    """Serves the script exposition, rendered fresh on every request."""

    thread_name = 'MetricsServer'

    def __init__(
        self,
        config: ProgramConfig,
        cache: ResultCache,
        renderer: ExpositionRenderer,
        logger: logging.Logger
    ):
        super().__init__(config.listen_address, config.port, logger)
        self.metrics_path = config.metrics_path
        self.cache = cache
        self.renderer = renderer

    def wsgi_app(self, environ, start_response):
        if environ.get('PATH_INFO', '') != self.metrics_path:
            start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
            return [b"Not Found\n"]

        body = self.renderer.render(self.cache.snapshot()).encode('utf-8', 'surrogateescape')
        start_response('200 OK', [
            ('Content-Type', CONTENT_TYPE_LATEST),
            ('Content-Length', str(len(body)))
        ])
        return [body]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class HealthCheck(BackgroundServer):
    """Health check endpoint implementation.

    Endpoints:
        GET /health: Service health status as JSON
        GET /metrics: Exporter self-metrics

    Response Format:
        {
            "service": {
                "status": "healthy|unhealthy",
                "up": true,
                ...
            },
            "stats": {
                "collection": {...},
                "configuration": {...}
            }
        }
    """

    thread_name = 'HealthCheckServer'

    def __init__(
        self,
        config: ProgramConfig,
        cache: ResultCache,
        stats: CollectionStats,
        metrics: ExporterMetrics,
        logger: logging.Logger
    ):
        super().__init__(config.listen_address, config.health_port, logger)
        self.config = config
        self.cache = cache
        self.stats = stats
        self.metrics = metrics

    def _create_error_response(self, status: str, message: str) -> bytes:
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def wsgi_app(self, environ, start_response):
        try:
            path = environ.get('PATH_INFO', '').rstrip('/')

            if path == '/metrics':
                self.metrics.uptime.set(self.config.get_uptime_seconds())
                self.metrics.cached_scripts.set(len(self.cache))
                start_response('200 OK', [('Content-Type', CONTENT_TYPE_LATEST)])
                return [generate_latest(self.metrics.registry)]

            if path not in ('', '/health'):
                start_response('404 Not Found', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", "Not Found")]

            is_healthy = self.stats.is_healthy()
            status = '200 OK' if is_healthy else '503 Service Unavailable'
            start_response(status, [
                ('Content-Type', 'application/json'),
                ('Cache-Control', 'no-cache, no-store, must-revalidate')
            ])
            return [json.dumps(self._build_report(is_healthy), indent=2).encode()]

        except Exception as e:
            self.logger.error(f"Health check error: {e}", exc_info=True)
            start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
            return [self._create_error_response("error", str(e))]

    def _build_report(self, is_healthy: bool) -> Dict[str, Any]:
        last_cycle = self.stats.last_cycle_datetime
        return {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "version": __version__,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "collection": {
                    "cycles": self.stats.cycles,
                    "runs_started": self.stats.runs_started,
                    "runs_completed": self.stats.runs_completed,
                    "runs_failed": self.stats.runs_failed,
                    "timeouts": self.stats.timeouts,
                    "access_errors": self.stats.access_errors,
                    "in_flight": self.stats.in_flight,
                    "cached_scripts": len(self.cache),
                    "last_cycle_seconds": round(self.stats.last_cycle_time, 3),
                    "last_cycle_datetime_utc": last_cycle.isoformat() if last_cycle else None
                },
                "configuration": {
                    "config_file": str(self.config.loaded_from) if self.config.loaded_from else None,
                    "scripts_path": str(self.config.scripts_path),
                    "interval_seconds": self.config.interval,
                    "timeout_seconds": self.config.timeout,
                    "metrics_port": self.config.port,
                    "metrics_path": self.config.metrics_path
                }
            }
        }

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScriptExporter:
    """Main service class for the script exporter.

    Wires discovery, execution, the cache and the HTTP servers together
    and manages their lifecycle.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        cache (ResultCache): Latest result per script
        stats (CollectionStats): Collection statistics
        scheduler (RefreshScheduler): Periodic collection driver
        metrics_server (MetricsServer): Script exposition endpoint
        health_check (Optional[HealthCheck]): Health endpoint, if enabled
        shutdown_event (asyncio.Event): Set to stop the service
    """

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        cache: Optional[ResultCache] = None,
        install_signal_handlers: bool = True
    ):
        self.config = config
        self.logger = logger
        self.cache = cache if cache is not None else ResultCache()
        self.stats = CollectionStats()
        self.metrics = ExporterMetrics()
        self.shutdown_event = asyncio.Event()
        self._install_signal_handlers = install_signal_handlers
        self._servers_started = False

        self.logger.info("Starting script exporter initialization")

        self.scheduler = RefreshScheduler(
            config,
            self.cache,
            ScriptLocator(config.scripts_path, config.extensions, logger),
            ScriptRunner(config, logger),
            logger,
            stats=self.stats,
            metrics=self.metrics
        )
        self.renderer = ExpositionRenderer(config.prefix, config.labels)
        self.metrics_server = MetricsServer(config, self.cache, self.renderer, logger)
        self.health_check = None
        if config.health_port:
            self.health_check = HealthCheck(config, self.cache, self.stats, self.metrics, logger)

        self.logger.info("Script exporter initialized")

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
        self.shutdown_event.set()

    def check_ports(self) -> bool:
        """Check if required ports are available."""
        port_configs = [(self.config.port, "metrics")]
        if self.config.health_port:
            port_configs.append((self.config.health_port, "health check"))

        for port, name in port_configs:
            if not self._check_port_available(port, name):
                return False
        return True

    def _check_port_available(self, port: int, name: str) -> bool:
        if port == 0:
            return True

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.config.listen_address, port))
                return True
            except OSError as e:
                self.logger.error(f"{name.title()} port {port} is not available: {e}")
                return False

    def check_scripts_root(self) -> bool:
        """Warn when the scripts directory is missing; its entry stays flagged."""
        root = self.config.scripts_path
        if root.is_dir():
            return True
        self.logger.warning(
            f"Scripts directory {root} does not exist or is not a directory; "
            f"serving file_access_error for '{root.name}' until it appears"
        )
        return False

    def _start_servers(self) -> bool:
        """Start metrics and health check servers."""
        if not self.metrics_server.start():
            return False

        if self.health_check and not self.health_check.start():
            self.logger.info("Stopping metrics server")
            self.metrics_server.stop()
            return False

        self._servers_started = True
        return True

    async def _cleanup_async(self) -> None:
        """Drain running scripts and stop the servers."""
        self.logger.info("Stopping metric collection...")
        if self.scheduler.pending:
            self.logger.info(f"Waiting for {self.scheduler.pending} running scripts...")
            if not await self.scheduler.wait_pending(self.config.shutdown_timeout):
                self.logger.warning("Some scripts did not complete in time, killing them")
                await self.scheduler.cancel_pending()

        if self._servers_started:
            if self.health_check:
                self.health_check.stop()
            self.metrics_server.stop()
            self._servers_started = False

        if self.config.running_under_systemd:
            notify(Notification.STOPPING)

    async def run(self) -> int:
        """Main service loop.

        Returns:
            Process exit code
        """
        loop = asyncio.get_running_loop()
        if self._install_signal_handlers:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._handle_signal, sig)

        try:
            if not self.check_ports():
                self.logger.error("Required ports are not available")
                return 1

            self.check_scripts_root()

            # Discovery must succeed before the listener comes up
            await self.scheduler.refresh()

            if not self._start_servers():
                return 1

            if self.config.running_under_systemd:
                notify(Notification.READY)

            await self.scheduler.run(self.shutdown_event)
            self.logger.info("Shutdown event received, stopping service")
            return 0

        except NoScriptsFoundError as e:
            self.logger.critical(str(e))
            return 1

        except Exception as e:
            self.logger.exception(f"Fatal error in service: {e}")
            return 1

        finally:
            await self._cleanup_async()
            if self._install_signal_handlers:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='script-exporter',
        description='Expose the output of shell scripts as Prometheus metrics'
    )
    parser.add_argument('--config', type=Path, help='Path to YAML configuration file')
    parser.add_argument('--interval', type=float, help='Interval for metrics collection in seconds')
    parser.add_argument('--timeout', type=float, help='Timeout for scripts in seconds')
    parser.add_argument('--path', help='Path to directory with scripts')
    parser.add_argument('--port', help='Address to expose metrics on, e.g. :9000')
    parser.add_argument('--prefix', help='Prefix for the status metric name')
    parser.add_argument('--labels', help='Additional labels for status metrics, e.g. env=prod,dc=eu')
    parser.add_argument('--log-level', help='Log level (DEBUG, VERBOSE, INFO, WARNING, ERROR)')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser.parse_args(argv)

def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Turn command line flags into an exporter section override."""
    overrides: Dict[str, Any] = {}

    if args.port is not None:
        host, port = parse_listen_address(args.port)
        overrides['listen_address'] = host
        overrides['port'] = port
    if args.interval is not None:
        overrides.setdefault('collection', {})['interval_sec'] = args.interval
    if args.timeout is not None:
        overrides.setdefault('collection', {})['timeout_sec'] = args.timeout
    if args.path is not None:
        overrides.setdefault('scripts', {})['path'] = args.path
    if args.prefix is not None:
        overrides.setdefault('exposition', {})['prefix'] = args.prefix
    if args.labels is not None:
        overrides.setdefault('exposition', {})['labels'] = parse_labels(args.labels)
    if args.log_level is not None:
        level = args.log_level.upper()
        overrides['logging'] = {'level': level, 'console_level': level}

    return overrides

async def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the script exporter service."""
    args = parse_args(argv)
    try:
        source = ProgramSource(config_file=args.config)
        config = ProgramConfig(source, build_overrides(args))
        config.load()
        program_logger = ProgramLogger(source, config)
    except (ExporterError, OSError, ValueError) as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    try:
        exporter = ScriptExporter(config, program_logger.logger)
        return await exporter.run()
    finally:
        program_logger.close()

def cli() -> None:
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    cli()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
