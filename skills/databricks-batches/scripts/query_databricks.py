#!/usr/bin/env python
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "databricks-sql-connector>=3.0",
#   "duckdb>=1.4.3",
#   "polars[pyarrow]>=1.36.1",
#   "pyarrow>=14.0",
#   "pydantic>=2.0",
#   "pyyaml>=6.0",
# ]
# ///
"""
Databricks Arrow Batch Viewer

Runs a single SQL query against a Databricks SQL warehouse, pulls the result
as a stream of Arrow record batches and prints every batch as a tab-delimited
text table. Each batch is released before the next one is pulled, and both the
query execution and the batch retrieval are bounded by a deadline.

Supports two engines:
1. databricks: the remote warehouse (credentials from a secrets file or the
   DATABRICKS_HOST / DATABRICKS_HTTP_PATH / DATABRICKS_ACCESS_TOKEN variables)
2. duckdb: a local engine with optional aliased file sources, handy offline
   (database file from the request or a `type: duckdb` secret)

Output format:
    id      fare    pickup
    --------        --------        --------
    1       12.50   A
    2       NULL    B

Progress and the final row count / elapsed time are logged to stderr. Fatal
errors are printed to stdout as {"error": "..."} and the exit status is 1.

Usage:
    echo '{}' | uv run scripts/query_databricks.py
    echo '{"query": "SELECT * FROM samples.nyctaxi.trips LIMIT 10", "secrets_file": "secrets.yaml"}' | uv run scripts/query_databricks.py
    echo '{"engine": "duckdb", "query": "SELECT * FROM trips", "sources": [{"type": "file", "alias": "trips", "path": "trips.parquet"}]}' | uv run scripts/query_databricks.py
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import threading
import time
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, NamedTuple, NoReturn, Optional, Protocol, Union

import duckdb
import polars as pl
import pyarrow as pa
import yaml
from databricks import sql as dbsql
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_QUERY = "SELECT * FROM samples.nyctaxi.trips"
DEFAULT_MAX_ROWS = 100_000
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_PORT = 443

COLUMN_DELIMITER = "\t"
SEPARATOR_CELL = "--------"
NULL_TEXT = "NULL"

LOG_LEVEL_ENV = "QUERY_DATABRICKS_LOG_LEVEL"

# Environment variable pattern for ${VAR_NAME} substitution
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Errors
# =============================================================================


class QueryError(Exception):
    """Base class for fatal errors; ends the whole query run."""

    summary: Optional["StreamSummary"] = None


class ConfigurationError(QueryError):
    """Missing or invalid connection parameters."""


class ExecutionError(QueryError):
    """Query submission failed or ran past the execution deadline."""


class RetrievalError(QueryError):
    """A batch pull failed. Batches rendered before the failure stay valid."""


class DeadlineExceeded(RetrievalError):
    """The retrieval deadline elapsed before a batch pull returned."""


class UnsupportedTypeWarning(UserWarning):
    """A column type has no formatter; its cells render as a placeholder."""


# =============================================================================
# Pydantic Request / Secret Models
# =============================================================================


class SecretBase(BaseModel):
    """Base model for all secret types with common validation."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)


class DatabricksSecret(SecretBase):
    """Databricks SQL warehouse credentials."""

    type: Literal["databricks"]
    host: str
    http_path: str
    access_token: str
    port: int = DEFAULT_PORT


class DuckDBSecret(SecretBase):
    """Local DuckDB database location."""

    type: Literal["duckdb"]
    database: str = ":memory:"


# Union type for all secret types
AnySecret = Union[DatabricksSecret, DuckDBSecret]

# Map type name to secret class
SECRET_TYPE_MAP: Dict[str, type[SecretBase]] = {
    "databricks": DatabricksSecret,
    "duckdb": DuckDBSecret,
}


class SecretsConfig(BaseModel):
    """Top-level secrets configuration file structure."""

    secrets: Dict[str, AnySecret]

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def parse_secret_types(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        """Parse secrets dict and dispatch to correct model based on 'type' field."""
        secrets_raw = values.get("secrets") or {}
        parsed_secrets = {}

        for name, secret_data in secrets_raw.items():
            if isinstance(secret_data, SecretBase):
                parsed_secrets[name] = secret_data
                continue

            secret_type = secret_data.get("type")
            if secret_type not in SECRET_TYPE_MAP:
                raise ValueError(f"Unknown secret type: {secret_type}")

            parsed_secrets[name] = SECRET_TYPE_MAP[secret_type](**secret_data)

        values["secrets"] = parsed_secrets
        return values


class SourceSpec(BaseModel):
    """A local file registered as a view for the duckdb engine."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["file"] = "file"
    alias: str
    path: str
    delimiter: Optional[str] = None
    header: Optional[bool] = None


class QueryOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # rows per fetched page, so also the largest batch size
    max_rows: int = Field(default=DEFAULT_MAX_ROWS, gt=0)
    execute_timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    fetch_timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    format: Literal["text", "markdown"] = "text"


class QueryRequest(BaseModel):
    """JSON request read from stdin."""

    model_config = ConfigDict(extra="forbid")

    query: str = DEFAULT_QUERY
    engine: Literal["databricks", "duckdb"] = "databricks"
    secrets_file: Optional[str] = None
    secret: Optional[str] = None
    database: str = ":memory:"
    sources: List[SourceSpec] = Field(default_factory=list)
    options: QueryOptions = Field(default_factory=QueryOptions)

    @model_validator(mode="after")
    def check_engine_fields(self) -> "QueryRequest":
        if not self.query.strip():
            raise ValueError("'query' must not be empty")
        if self.sources and self.engine != "duckdb":
            raise ValueError("'sources' are only supported by the duckdb engine")
        return self


# =============================================================================
# Secrets Helper Functions
# =============================================================================


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand ${VAR_NAME} patterns in strings.

    Raises ValueError if referenced env var doesn't exist.
    """
    if isinstance(value, str):
        result = value
        for var_name in ENV_VAR_PATTERN.findall(value):
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable not set: {var_name}")
            result = result.replace(f"${{{var_name}}}", env_value)
        return result
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    else:
        return value


def load_secrets_from_yaml(file_path: str) -> SecretsConfig:
    """
    Load and validate secrets from a YAML file using Pydantic.

    Supports environment variable substitution with ${VAR_NAME} syntax.

    Raises:
        FileNotFoundError: If secrets file doesn't exist
        yaml.YAMLError: If YAML is malformed
        ValidationError: If secrets don't match schema
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Secrets file not found: {file_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw_data = yaml.safe_load(f)

    if raw_data is None:
        raise ValueError("Secrets file is empty")

    return SecretsConfig(**expand_env_vars(raw_data))


def databricks_secret_from_env(environ: Optional[Dict[str, str]] = None) -> DatabricksSecret:
    """Build Databricks credentials from the DATABRICKS_* environment variables."""
    environ = os.environ if environ is None else environ
    names = {
        "host": "DATABRICKS_HOST",
        "http_path": "DATABRICKS_HTTP_PATH",
        "access_token": "DATABRICKS_ACCESS_TOKEN",
    }
    missing = [var for var in names.values() if not environ.get(var)]
    if missing:
        raise ConfigurationError(
            f"Missing Databricks settings: {', '.join(missing)} "
            "(set them or pass a 'secrets_file')"
        )
    return DatabricksSecret(
        type="databricks", **{key: environ[var] for key, var in names.items()}
    )


def resolve_secret(request: QueryRequest, secret_cls: type[SecretBase]) -> Any:
    """Pick the entry of type `secret_cls` from the request's secrets file.

    'secret' names the entry to use; it may be omitted when the file holds
    exactly one entry of that type.
    """
    try:
        secrets = load_secrets_from_yaml(request.secrets_file).secrets
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in secrets file: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(
            f"Secret validation failed: {format_validation_error(e)}"
        ) from e
    except ValueError as e:
        raise ConfigurationError(f"Secret validation error: {e}") from e

    type_name = next(name for name, cls in SECRET_TYPE_MAP.items() if cls is secret_cls)
    if request.secret:
        if request.secret not in secrets:
            raise ConfigurationError(
                f"Secret '{request.secret}' not found in secrets file"
            )
        secret = secrets[request.secret]
        if not isinstance(secret, secret_cls):
            raise ConfigurationError(
                f"Secret '{request.secret}' is a {secret.type} secret, not {type_name}"
            )
        return secret

    matching = [s for s in secrets.values() if isinstance(s, secret_cls)]
    if len(matching) != 1:
        raise ConfigurationError(
            f"Secrets file defines {len(matching)} {type_name} secrets; "
            "name one with 'secret'"
        )
    return matching[0]


def resolve_databricks_secret(request: QueryRequest) -> DatabricksSecret:
    """Pick the Databricks credentials for a request.

    A secrets file wins over the DATABRICKS_* environment variables.
    """
    if not request.secrets_file:
        return databricks_secret_from_env()
    return resolve_secret(request, DatabricksSecret)


def resolve_duckdb_database(request: QueryRequest) -> str:
    """A duckdb secret's database wins over the request's 'database'."""
    if not request.secrets_file:
        return request.database
    return resolve_secret(request, DuckDBSecret).database


def format_validation_error(error: ValidationError) -> str:
    details = []
    for err in error.errors():
        loc = " -> ".join(str(x) for x in err.get("loc", []))
        msg = err.get("msg", "")
        details.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(details)


# =============================================================================
# Value Formatting
# =============================================================================


def _format_integer(scalar: pa.Scalar) -> str:
    return str(scalar.as_py())


def _format_float(scalar: pa.Scalar) -> str:
    return f"{scalar.as_py():.2f}"


def _format_text(scalar: pa.Scalar) -> str:
    return scalar.as_py()


_MICROS_PER_UNIT = {"s": 1_000_000, "ms": 1_000, "us": 1}


def _format_timestamp(scalar: pa.TimestampScalar) -> str:
    """Render an epoch offset as RFC 3339 in UTC, whole seconds."""
    unit = scalar.type.unit
    if unit == "ns":
        micros = scalar.value // 1_000
    else:
        micros = scalar.value * _MICROS_PER_UNIT[unit]
    try:
        ts = EPOCH + timedelta(microseconds=micros)
    except OverflowError:
        # Arrow holds instants outside datetime's years 1..9999
        return f"Timestamp out of range: {scalar.value}{unit}"
    return (
        f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d}"
        f"T{ts.hour:02d}:{ts.minute:02d}:{ts.second:02d}Z"
    )


# Checked in order; first match wins.
VALUE_FORMATTERS: List[tuple[Callable[[pa.DataType], bool], Callable[[Any], str]]] = [
    (pa.types.is_int32, _format_integer),
    (pa.types.is_int64, _format_integer),
    (pa.types.is_float64, _format_float),
    (pa.types.is_string, _format_text),
    (pa.types.is_timestamp, _format_timestamp),
]


def formatter_for(data_type: pa.DataType) -> Optional[Callable[[Any], str]]:
    """Return the formatter for an Arrow type, or None if it is unsupported."""
    for matches, formatter in VALUE_FORMATTERS:
        if matches(data_type):
            return formatter
    return None


def unsupported_placeholder(data_type: pa.DataType) -> str:
    return f"Unsupported type: {data_type}"


def format_value(column: pa.Array, index: int) -> str:
    """
    Render the value at `index` of an Arrow column as display text.

    Nulls render as NULL whatever the column type. Integers render in plain
    decimal, doubles with two decimals, strings as-is and timestamps as RFC
    3339 (UTC). Other types render as an "Unsupported type" placeholder
    instead of failing.

    Raises:
        IndexError: If index is outside the column
    """
    if not 0 <= index < len(column):
        raise IndexError(f"row index {index} out of range for column of length {len(column)}")

    scalar = column[index]
    if not scalar.is_valid:
        return NULL_TEXT

    formatter = formatter_for(column.type)
    if formatter is None:
        return unsupported_placeholder(column.type)
    return formatter(scalar)


def unsupported_columns(schema: pa.Schema) -> List[str]:
    """Names of the fields whose values will render as placeholders."""
    return [f.name for f in schema if formatter_for(f.type) is None]


# =============================================================================
# Batch Rendering
# =============================================================================


def _format_rows(batch: pa.RecordBatch) -> List[List[str]]:
    columns = batch.columns
    return [
        [format_value(column, row) for column in columns]
        for row in range(batch.num_rows)
    ]


def render_batch(batch: pa.RecordBatch, delimiter: str = COLUMN_DELIMITER) -> str:
    """
    Render a record batch as a text table.

    Layout: header of field names, a dashed separator cell per column, one
    line per row, then a blank line. Columns keep schema order.
    """
    lines = [
        delimiter.join(batch.schema.names),
        delimiter.join([SEPARATOR_CELL] * batch.num_columns),
    ]
    lines.extend(delimiter.join(cells) for cells in _format_rows(batch))
    lines.append("")
    return "\n".join(lines) + "\n"


def _unique_names(names: List[str]) -> List[str]:
    """Suffix repeated column names with _1, _2, ... as Polars needs distinct names."""
    taken = set(names)
    seen: Dict[str, int] = {}
    unique = []
    for name in names:
        if name not in seen:
            seen[name] = 0
            unique.append(name)
            continue
        while True:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
            if candidate not in taken:
                break
        taken.add(candidate)
        unique.append(candidate)
    return unique


def render_batch_markdown(batch: pa.RecordBatch) -> str:
    """Render the same formatted cells as a Markdown table using Polars."""
    rows = _format_rows(batch)
    df = pl.DataFrame(
        [
            pl.Series(name, [cells[i] for cells in rows], dtype=pl.Utf8)
            for i, name in enumerate(_unique_names(batch.schema.names))
        ]
    )
    with pl.Config(
        tbl_formatting="MARKDOWN",
        tbl_hide_dataframe_shape=True,
        tbl_hide_column_data_types=True,
        set_tbl_width_chars=1000,
        fmt_str_lengths=1000,
        tbl_rows=-1,
    ):
        table = str(df)
    return table + "\n\n"


RENDERERS: Dict[str, Callable[[pa.RecordBatch], str]] = {
    "text": render_batch,
    "markdown": render_batch_markdown,
}


# =============================================================================
# Deadlines
# =============================================================================


class Deadline:
    """A fixed point in time, measured on `clock`, after which waiting stops."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        return self.remaining() <= 0


def call_with_deadline(
    fn: Callable[[], Any],
    deadline: Deadline,
    what: str,
    error_cls: type[QueryError] = RetrievalError,
    timeout_cls: type[QueryError] = DeadlineExceeded,
) -> Any:
    """
    Run a blocking call on a daemon worker thread, waiting at most until `deadline`.

    Failures of `fn` are re-raised as `error_cls`; running out of time raises
    `timeout_cls`. An already expired deadline raises without calling `fn`.
    A call that outlives its deadline is abandoned; being a daemon thread it
    does not keep the process alive.
    """
    if deadline.expired():
        raise timeout_cls(f"{what}: deadline exceeded")

    outcome: Dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = fn()
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="query-worker", daemon=True)
    worker.start()
    worker.join(deadline.remaining())
    if worker.is_alive():
        raise timeout_cls(f"{what}: deadline exceeded")

    error = outcome.get("error")
    if isinstance(error, QueryError):
        raise error
    if error is not None:
        raise error_cls(f"{what} failed: {error}") from error
    return outcome.get("value")


# =============================================================================
# Batch Streams
# =============================================================================


class BatchStream(Protocol):
    def has_next(self) -> bool: ...

    def next_batch(self) -> Optional[pa.RecordBatch]: ...

    def release(self, batch: pa.RecordBatch) -> None: ...

    def close(self) -> None: ...


class ArrowBatchStream:
    """
    Hands out record batches one at a time.

    A batch must be given back with release() before the next one can be
    pulled. next_batch() returns None once the source turns out to be empty.
    """

    def __init__(self) -> None:
        self._exhausted = False
        self._outstanding: Optional[pa.RecordBatch] = None

    def _fetch(self) -> Optional[pa.RecordBatch]:
        raise NotImplementedError

    def has_next(self) -> bool:
        return not self._exhausted

    def next_batch(self) -> Optional[pa.RecordBatch]:
        if self._outstanding is not None:
            raise RuntimeError("previous batch has not been released")
        if self._exhausted:
            return None
        batch = self._fetch()
        if batch is None:
            self._exhausted = True
            return None
        self._outstanding = batch
        return batch

    def release(self, batch: pa.RecordBatch) -> None:
        if batch is not self._outstanding:
            raise RuntimeError("batch was not handed out by this stream")
        self._outstanding = None

    def close(self) -> None:
        self._exhausted = True
        self._outstanding = None


class DatabricksBatchStream(ArrowBatchStream):
    """Pages through a Databricks cursor with fetchmany_arrow()."""

    def __init__(self, cursor: Any, page_size: int):
        super().__init__()
        self._cursor = cursor
        self._page_size = page_size

    def _fetch(self) -> Optional[pa.RecordBatch]:
        table = self._cursor.fetchmany_arrow(self._page_size)
        # fetchmany_arrow fills the page unless the result has run out
        if table.num_rows < self._page_size:
            self._exhausted = True
        if table.num_rows == 0:
            return None
        return table.combine_chunks().to_batches()[0]

    def close(self) -> None:
        super().close()
        self._cursor.close()


class DuckDBBatchStream(ArrowBatchStream):
    """Reads batches from a DuckDB Arrow record batch reader."""

    def __init__(self, reader: pa.RecordBatchReader):
        super().__init__()
        self._reader = reader

    def _fetch(self) -> Optional[pa.RecordBatch]:
        try:
            return self._reader.read_next_batch()
        except StopIteration:
            return None

    def close(self) -> None:
        super().close()
        self._reader.close()


# =============================================================================
# Stream Consumer
# =============================================================================


class StreamSummary(NamedTuple):
    total_rows: int
    batch_count: int
    elapsed: float


Phase = Literal["idle", "fetching", "rendering", "done", "failed"]


@dataclass
class StreamState:
    started_at: float
    phase: Phase = "idle"
    batch_index: int = 0
    total_rows: int = 0

    def summary(self, now: float) -> StreamSummary:
        return StreamSummary(self.total_rows, self.batch_index, now - self.started_at)


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def consume_batches(
    stream: BatchStream,
    deadline: Deadline,
    write: Optional[Callable[[str], Any]] = None,
    render: Callable[[pa.RecordBatch], str] = render_batch,
    clock: Callable[[], float] = time.monotonic,
) -> StreamSummary:
    """
    Pull, render and release every batch of `stream` in delivery order.

    Each pull is bounded by `deadline`. A failed or timed out pull stops the
    loop with RetrievalError (DeadlineExceeded on timeout); the partial
    summary is attached to the exception. Row count and elapsed time are
    logged however the loop ends.

    Returns:
        StreamSummary(total_rows, batch_count, elapsed)
    """
    write = write or _write_stdout
    state = StreamState(started_at=clock())
    checked_schema = False
    try:
        while stream.has_next():
            state.phase = "fetching"
            batch = call_with_deadline(
                stream.next_batch, deadline, f"retrieving batch {state.batch_index}"
            )
            if batch is None:
                break

            state.phase = "rendering"
            try:
                if not checked_schema:
                    _warn_unsupported(batch.schema)
                    checked_schema = True
                logger.info("batch %d: nRecords=%d", state.batch_index, batch.num_rows)
                write(render(batch))
                state.total_rows += batch.num_rows
                state.batch_index += 1
            finally:
                stream.release(batch)
                del batch
        state.phase = "done"
        return state.summary(clock())
    except QueryError as e:
        state.phase = "failed"
        e.summary = state.summary(clock())
        raise
    except Exception:
        state.phase = "failed"
        raise
    finally:
        summary = state.summary(clock())
        logger.info("NRows: %d", summary.total_rows)
        logger.info("Data processing took %.3fs", summary.elapsed)


def _warn_unsupported(schema: pa.Schema) -> None:
    names = unsupported_columns(schema)
    if names:
        warnings.warn(
            f"No formatter for column(s) {', '.join(names)}; rendering placeholders",
            UnsupportedTypeWarning,
            stacklevel=3,
        )


# =============================================================================
# Query Executors
# =============================================================================


def escape_identifier(name: str) -> str:
    """Escape a SQL identifier by quoting it."""
    return '"' + name.replace('"', '""') + '"'


def escape_string(s: str) -> str:
    """Escape a string literal for SQL."""
    return "'" + s.replace("'", "''") + "'"


def load_source(con: duckdb.DuckDBPyConnection, src: SourceSpec) -> None:
    """Register a local file as a DuckDB view named after its alias."""
    escaped_alias = escape_identifier(src.alias)
    escaped_path = escape_string(src.path)
    # Handle glob patterns - extract extension from pattern
    clean_path = src.path.rstrip("*").rstrip("/")
    ext = os.path.splitext(clean_path)[1].lower()

    if ext in (".csv", ".tsv"):
        csv_opts = []
        if src.delimiter:
            csv_opts.append(f"sep={escape_string(src.delimiter)}")
        elif ext == ".tsv":
            csv_opts.append("sep='\\t'")
        if src.header is not None:
            csv_opts.append(f"header={str(src.header).lower()}")
        opts_str = ", " + ", ".join(csv_opts) if csv_opts else ""
        reader = f"read_csv({escaped_path}{opts_str})"
    elif ext == ".parquet":
        reader = f"read_parquet({escaped_path})"
    elif ext in (".json", ".ndjson"):
        reader = f"read_json({escaped_path})"
    else:
        raise ConfigurationError(f"Unsupported file extension: {ext}")

    con.execute(f"CREATE OR REPLACE VIEW {escaped_alias} AS SELECT * FROM {reader}")


class DatabricksExecutor:
    """Runs queries on a Databricks SQL warehouse."""

    def __init__(self, secret: DatabricksSecret, max_rows: int = DEFAULT_MAX_ROWS):
        self.secret = secret
        self.max_rows = max_rows
        self._connection: Any = None
        self._cursor: Any = None

    def __enter__(self) -> "DatabricksExecutor":
        try:
            self._connection = dbsql.connect(
                server_hostname=self.secret.host,
                http_path=self.secret.http_path,
                access_token=self.secret.access_token,
                _port=self.secret.port,
            )
        except Exception as e:
            raise ExecutionError(f"unable to connect to Databricks: {e}") from e
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def execute(self, sql: str) -> DatabricksBatchStream:
        self._cursor = self._connection.cursor(arraysize=self.max_rows)
        self._cursor.execute(sql)
        return DatabricksBatchStream(self._cursor, self.max_rows)

    def cancel(self) -> None:
        if self._cursor is not None:
            self._cursor.cancel()

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None


class DuckDBExecutor:
    """Runs queries on a local DuckDB database, with optional file sources."""

    def __init__(
        self,
        database: str = ":memory:",
        sources: Optional[List[SourceSpec]] = None,
        max_rows: int = DEFAULT_MAX_ROWS,
    ):
        self.database = database
        self.sources = sources or []
        self.max_rows = max_rows
        self._con: Optional[duckdb.DuckDBPyConnection] = None

    def __enter__(self) -> "DuckDBExecutor":
        try:
            self._con = duckdb.connect(database=self.database)
            self._con.execute("PRAGMA memory_limit='1GB';")
            self._con.execute("PRAGMA threads=4;")
        except duckdb.Error as e:
            raise ExecutionError(f"unable to open DuckDB database: {e}") from e
        try:
            for src in self.sources:
                load_source(self._con, src)
        except duckdb.Error as e:
            self.close()
            raise ConfigurationError(f"unable to register source: {e}") from e
        except ConfigurationError:
            self.close()
            raise
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def execute(self, sql: str) -> DuckDBBatchStream:
        reader = self._con.execute(sql).fetch_record_batch(self.max_rows)
        return DuckDBBatchStream(reader)

    def cancel(self) -> None:
        if self._con is not None:
            self._con.interrupt()

    def close(self) -> None:
        if self._con is not None:
            self._con.close()
            self._con = None


def build_executor(request: QueryRequest) -> DatabricksExecutor | DuckDBExecutor:
    max_rows = request.options.max_rows
    if request.engine == "duckdb":
        return DuckDBExecutor(resolve_duckdb_database(request), request.sources, max_rows)
    return DatabricksExecutor(resolve_databricks_secret(request), max_rows)


def run_query(
    executor: Any,
    sql: str,
    options: QueryOptions,
    write: Optional[Callable[[str], Any]] = None,
) -> StreamSummary:
    """
    Execute `sql` and print its batches.

    Execution and retrieval each get their own deadline; the retrieval one
    starts once the query has been submitted. The executor is cancelled when
    either deadline runs out.
    """
    logger.debug("executing query: %s", sql)
    try:
        stream = call_with_deadline(
            lambda: executor.execute(sql),
            Deadline(options.execute_timeout),
            "unable to run the query",
            error_cls=ExecutionError,
            timeout_cls=ExecutionError,
        )
    except ExecutionError:
        executor.cancel()
        raise

    stalled = False
    try:
        return consume_batches(
            stream,
            Deadline(options.fetch_timeout),
            write=write,
            render=RENDERERS[options.format],
        )
    except DeadlineExceeded:
        stalled = True
        executor.cancel()
        raise
    finally:
        # An abandoned fetch may still be inside the cursor or reader; the
        # executor releases it with the connection instead.
        if not stalled:
            stream.close()


# =============================================================================
# Entry Point
# =============================================================================


def _fail(message: str) -> NoReturn:
    print(json.dumps({"error": message}))
    sys.exit(1)


def main() -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper(),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logging.captureWarnings(True)

    raw = sys.stdin.read()
    try:
        req = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON input: {e}")
    if not isinstance(req, dict):
        _fail("Invalid JSON input: expected an object")

    try:
        request = QueryRequest.model_validate(req)
    except ValidationError as e:
        _fail(f"Invalid request: {format_validation_error(e)}")

    try:
        with build_executor(request) as executor:
            run_query(executor, request.query, request.options)
    except QueryError as e:
        logger.error("%s", e)
        _fail(str(e))
    except Exception as e:
        logger.exception("unexpected failure")
        _fail(str(e))


if __name__ == "__main__":
    main()
