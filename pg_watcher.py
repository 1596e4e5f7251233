import argparse
import datetime
import decimal
import logging
import math
import re
import signal
import sys
import threading
import time
import traceback
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass

import psycopg2                 # For connecting to PostgreSQL
import pytz                     # For named log timezones
import tzlocal                  # For the system log timezone
import yaml                     # For loading the optional settings file

__version__ = "0.1.0"

ADMIN_DB = "postgres"
LIST_DATABASES_SQL = "select datname from pg_database where datname not in ('template1','template0','postgres')"
ROLE_PROBE_SQL = "SELECT CASE WHEN pg_is_in_recovery() THEN 0 ELSE 1 END AS leader"

DEFAULT_CONN = "user=postgres host=127.0.0.1 port=5435"
DEFAULT_PG_TIMEOUT = "5s"
DEFAULT_PREFIX = "pgwatch"

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Flag destinations that a settings file may supply defaults for
SETTINGS_DEFAULT_KEYS = frozenset([
    'conn', 'pg_timeout', 'db_name', 'labels', 'ignored_columns', 'prefix_metric',
    'jobs', 'sql_spliter', 'master_only', 'replica_only',
])

METRIC = "metric"
LABEL = "label"
UNUSABLE = "unusable"


class WatcherError(Exception):
    """Base class for errors surfaced by a pg_watcher run."""


class ConfigError(WatcherError):
    """Missing, contradictory or malformed options."""


class AdminQueryError(WatcherError):
    """Database enumeration or role probe against the administrative database failed."""


class RoleGateError(WatcherError):
    """The node role does not match -master-only / -replica-only."""


class QueryError(WatcherError):
    """Connect or query failure for a single database."""


class CancelledError(WatcherError):
    """The run context was cancelled before all work finished."""


class TZFormatter(logging.Formatter):
    """Logging formatter that renders times in a given tzinfo (pytz or tzlocal).

    Usage: set handler.setFormatter(TZFormatter(fmt, datefmt, tz=tzobj))
    """
    def __init__(self, fmt=None, datefmt=None, tz=None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = tz

    def formatTime(self, record, datefmt=None):
        # record.created is a POSIX timestamp
        dt = datetime.datetime.fromtimestamp(record.created, tz=self.tz or datetime.timezone.utc)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def resolve_timezone(tz_name):
    if not tz_name or tz_name == 'system':
        return tzlocal.get_localzone()
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ConfigError(f"ERROR: unknown timezone '{tz_name}'")


def resolve_log_level(name):
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ConfigError(f"ERROR: unknown log level '{name}'")
    return level


def configure_logging(level='INFO', tz_name='system'):
    """
    Adds a stderr handler (stdout carries samples only) to the root logger
    that renders timestamps in the configured timezone, and sets the root
    level. Handlers installed by someone else are left alone.

    Returns a callable that removes the handler and restores the previous level.
    """
    log_level = resolve_log_level(level)
    tzinfo = resolve_timezone(tz_name)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TZFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT, tz=tzinfo))

    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    root.setLevel(log_level)

    def restore():
        root.removeHandler(handler)
        root.setLevel(previous_level)
    return restore


def parse_duration(s):
    """
    Converts a duration string like '500ms', '10s', '5m', or '2h' into seconds (float).
    """
    units = {
        'ms': 0.001,
        's': 1,
        'm': 60,
        'h': 3600
    }

    s = s.strip().lower()
    for unit, factor in units.items():
        if s.endswith(unit):
            try:
                return float(s[:-len(unit)]) * factor
            except ValueError:
                raise ValueError(f"Invalid numeric value in duration: {s}")
    # Default fallback: assume it's raw seconds
    try:
        return float(s)
    except ValueError:
        raise ValueError(f"Unrecognized duration format: {s}")


_PASSWORD_KV = re.compile(r"(password\s*=\s*)('(?:[^'\\]|\\.)*'|\S+)", re.IGNORECASE)
_PASSWORD_URI = re.compile(r"(://[^:/@\s]+:)([^@\s]+)@")


def mask_password(conn):
    """Hides password values in a libpq keyword string or URI before it is logged."""
    conn = _PASSWORD_KV.sub(r"\1***", conn)
    return _PASSWORD_URI.sub(r"\1***@", conn)


# --- Names and values ---

_UNDERSCORE_RUN = re.compile(r"_+")


def normalize_name(s):
    """
    Converts an arbitrary column or metric name into a Prometheus-friendly
    identifier: lowercase, '-', '.' and ' ' become '_', runs of '_' collapse,
    and a leading digit gets a '_' prefix.
    """
    s = s.lower()
    for ch in "-. ":
        s = s.replace(ch, "_")
    s = _UNDERSCORE_RUN.sub("_", s)
    if s and s[0] in "0123456789":
        s = "_" + s
    return s


def make_column_set(columns):
    return frozenset(c.strip() for c in columns if c.strip())


def _parse_float(text):
    # Only plain decimal tokens; no padding or digit separators
    if not text or text != text.strip() or '_' in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def to_float(v):
    """
    Coerces a cell value into a finite float, or None when it is unusable as a sample.
    """
    if v is None or isinstance(v, bool):
        return None
    try:
        if isinstance(v, (int, float, decimal.Decimal)):
            f = float(v)
        elif isinstance(v, (bytes, bytearray, memoryview)):
            f = _parse_float(bytes(v).decode('utf-8', errors='replace'))
        elif isinstance(v, str):
            f = _parse_float(v)
        else:
            f = _parse_float(str(v))
            if f is None and hasattr(v, '__float__'):
                f = float(v)
    except (OverflowError, TypeError, ValueError):
        return None
    if f is None or math.isnan(f) or math.isinf(f):
        return None
    return f


def label_value(v):
    if v is None:
        return "<nil>"
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v).decode('utf-8', errors='replace')
    return str(v)


def classify_value(v):
    """
    Returns (LABEL, str) for text cells, (METRIC, float) for finite numeric
    cells and (UNUSABLE, None) for everything else.
    """
    if isinstance(v, (str, bytes, bytearray, memoryview)):
        return LABEL, label_value(v)
    f = to_float(v)
    if f is None:
        return UNUSABLE, None
    return METRIC, f


def format_sample_value(value):
    """
    Renders a float in shortest round-trip form, switching to exponent
    notation below 1e-4 and from 1e+06 up (1e+06, 1.5e-07).
    """
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    d = decimal.Decimal(repr(value)).normalize()
    sign, digits, exponent = d.as_tuple()
    exp10 = len(digits) + exponent - 1
    if exp10 < -4 or exp10 >= 6:
        mantissa = str(digits[0])
        if len(digits) > 1:
            mantissa += "." + "".join(str(x) for x in digits[1:])
        return f"{'-' if sign else ''}{mantissa}e{'-' if exp10 < 0 else '+'}{abs(exp10):02d}"
    return format(d, 'f')


# --- Row projection ---

ColumnMeta = namedtuple('ColumnMeta', ['idx', 'name', 'label', 'metric', 'ignored', 'forced'])


def build_column_meta(names, prefix, label_columns=frozenset(), ignored_columns=frozenset()):
    """Computes per-column metadata once per statement, in select-list order."""
    return [
        ColumnMeta(
            idx=i,
            name=name,
            label=normalize_name(name),
            metric=normalize_name(f"{prefix}_{name}"),
            ignored=name in ignored_columns,
            forced=name in label_columns,
        )
        for i, name in enumerate(names)
    ]


def project_row(metas, values):
    """
    Splits one row into a comma-joined label string and a list of
    (metric_name, value) pairs. Ignored columns are dropped, forced labels are
    always labels, text cells become labels and finite numbers become samples.
    """
    # Label values are written as-is; a '"', '\' or newline in a value breaks the line.
    # TODO: escape label values the way _quote_label does for the db label.
    pairs = []
    samples = []
    for m in metas:
        if m.ignored:
            continue
        v = values[m.idx]
        if m.forced:
            pairs.append(f'{m.label}="{label_value(v)}"')
            continue
        kind, converted = classify_value(v)
        if kind == LABEL:
            pairs.append(f'{m.label}="{converted}"')
        elif kind == METRIC:
            samples.append((m.metric, converted))
    return ",".join(pairs), samples


_LABEL_ESCAPES = {
    '\\': '\\\\', '"': '\\"', '\a': '\\a', '\b': '\\b', '\f': '\\f',
    '\n': '\\n', '\r': '\\r', '\t': '\\t', '\v': '\\v',
}


def _quote_label(value):
    """
    Double-quotes value with backslash escapes: the C-style ones for quote,
    backslash and whitespace controls, \\xNN for other ASCII controls and
    \\uNNNN / \\UNNNNNNNN for non-printable code points.
    """
    out = []
    for ch in value:
        if ch in _LABEL_ESCAPES:
            out.append(_LABEL_ESCAPES[ch])
        elif ch.isprintable():
            out.append(ch)
        elif ord(ch) < 0x80:
            out.append(f"\\x{ord(ch):02x}")
        elif ord(ch) <= 0xFFFF:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(f"\\U{ord(ch):08x}")
    return '"' + "".join(out) + '"'


_OUTPUT_LOCK = threading.Lock()


def emit_row(labels, samples, dbname, out):
    """Writes one exposition line per sample; returns the number of lines written."""
    db_label = f"db={_quote_label(dbname)}"
    label_set = f"{labels},{db_label}" if labels else db_label
    for name, value in samples:
        line = f"{name}{{{label_set}}} {format_sample_value(value)}\n"
        with _OUTPUT_LOCK:
            out.write(line)
    return len(samples)


# --- Configuration ---

@dataclass(frozen=True)
class Config:
    conn_template: str = DEFAULT_CONN
    pg_timeout: float = 5.0
    datnames: tuple = ()
    sql_texts: tuple = ()
    label_columns: frozenset = frozenset()
    ignored_columns: frozenset = frozenset()
    prefix: str = DEFAULT_PREFIX
    jobs: int = 1
    master_only: bool = False
    replica_only: bool = False
    log_level: str = 'INFO'
    timezone: str = 'system'

    def __post_init__(self):
        if self.jobs <= 0:
            object.__setattr__(self, 'jobs', 1)


class _FlagParser(argparse.ArgumentParser):
    def error(self, message):
        raise ConfigError(f"ERROR: {message}")


def build_parser():
    parser = _FlagParser(
        prog='pg_watcher',
        description='Runs SQL against PostgreSQL databases and prints each numeric column as a Prometheus sample.',
        allow_abbrev=False,
    )
    parser.add_argument('-version', '--version', action='store_true', help='print current version')
    parser.add_argument('-settings', '--settings', default='', help='YAML settings file (logging options and flag defaults)')
    parser.add_argument('-conn', '--conn', dest='conn', default=DEFAULT_CONN, help='PostgreSQL conn string (libpq format)')
    parser.add_argument('-pg-timeout', '--pg-timeout', dest='pg_timeout', default=DEFAULT_PG_TIMEOUT,
                        help='Timeout applied separately to connect, each query and close (e.g. 500ms, 5s)')
    parser.add_argument('-db-name', '--db-name', dest='db_name', default='', help="DB name(s): 'all' or comma-separated list")
    parser.add_argument('-sql-cmd', '--sql-cmd', dest='sql_cmd', default='', help='SQL query text')
    parser.add_argument('-sql-file', '--sql-file', dest='sql_file', default='', help='File with SQL command(s)')
    parser.add_argument('-labels', '--labels', dest='labels', default='',
                        help='Label columns (comma-separated). If not specified, all string columns will be used as labels.')
    parser.add_argument('-ignoredColumns', '--ignoredColumns', dest='ignored_columns', default='',
                        help='Columns to exclude (comma-separated)')
    parser.add_argument('-SQLSpliter', '--SQLSpliter', dest='sql_spliter', default='',
                        help='Delimiter for splitting multiple SQL commands')
    parser.add_argument('-master-only', '--master-only', dest='master_only', action='store_true', help='Execute only on master')
    parser.add_argument('-replica-only', '--replica-only', dest='replica_only', action='store_true', help='Execute only on replica')
    parser.add_argument('-prefixMetric', '--prefixMetric', dest='prefix_metric', default=DEFAULT_PREFIX, help='Metric prefix')
    parser.add_argument('-j', '--j', dest='jobs', type=int, default=1, help='Max concurrent databases to process')
    parser.add_argument('-log-level', '--log-level', dest='log_level', default='', help='Log level (default INFO)')
    return parser


def load_settings(settings_path):
    """
    Loads the YAML settings file. Recognised sections are 'global'
    (timezone, log_level) and 'defaults' (flag destination -> value).
    """
    try:
        with open(settings_path, 'r') as f:
            settings = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"ERROR: cannot read settings file: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"ERROR: invalid settings file '{settings_path}': {e}")
    if not isinstance(settings, dict):
        raise ConfigError(f"ERROR: settings file '{settings_path}' must contain a mapping")
    defaults = settings.get('defaults') or {}
    unknown = sorted(set(defaults) - SETTINGS_DEFAULT_KEYS)
    if unknown:
        raise ConfigError(f"ERROR: unknown keys under 'defaults' in {settings_path}: {unknown}")
    for key in ('master_only', 'replica_only'):
        if key in defaults and not isinstance(defaults[key], bool):
            raise ConfigError(f"ERROR: '{key}' under 'defaults' in {settings_path} must be true or false, got {defaults[key]!r}")
    return settings


def masked_settings(settings):
    settings_to_log = yaml.safe_load(yaml.dump(settings))
    defaults = settings_to_log.get('defaults') or {}
    if 'conn' in defaults:
        defaults['conn'] = mask_password(str(defaults['conn']))
    return settings_to_log


def parse_args(argv=None):
    """
    Parses the command line. When -settings is given, its 'defaults' are
    applied first so that flags on the command line still win.
    """
    parser = build_parser()
    args, _ = parser.parse_known_args(argv)
    settings = {}
    if args.settings:
        settings = load_settings(args.settings)
        parser.set_defaults(**(settings.get('defaults') or {}))
    args = parser.parse_args(argv)
    args.loaded_settings = settings
    return args


def _split_csv(value):
    if isinstance(value, (list, tuple)):
        items = [str(x) for x in value]
    else:
        items = str(value).split(',') if value else []
    return [x.strip() for x in items if x.strip()]


def split_sql(sql_text, spliter):
    """
    Splits SQL text on the delimiter after dropping one trailing ';'. Blank
    pieces are skipped; the rest keep their configured order.
    """
    if not spliter:
        return [sql_text]
    sql_text = sql_text.rstrip()
    if sql_text.endswith(';'):
        sql_text = sql_text[:-1]
    return [s for s in sql_text.split(spliter) if s.strip()]


def config_from_args(args):
    settings_global = (getattr(args, 'loaded_settings', None) or {}).get('global') or {}

    datnames = _split_csv(args.db_name)
    if not datnames:
        raise ConfigError("ERROR: -db-name must be specified (use 'all' or list).")

    if bool(args.sql_cmd) == bool(args.sql_file):
        raise ConfigError("ERROR: use either -sql-cmd or -sql-file (exactly one).")
    if args.sql_cmd:
        sql_text = args.sql_cmd
    else:
        try:
            with open(args.sql_file, 'r') as f:
                sql_text = f.read()
        except OSError as e:
            raise ConfigError(f"ERROR: cannot read SQL file: {e}")
    sql_texts = split_sql(sql_text, args.sql_spliter)
    if not sql_texts:
        raise ConfigError("ERROR: no SQL statements to run.")

    try:
        pg_timeout = parse_duration(str(args.pg_timeout))
    except ValueError as e:
        raise ConfigError(f"ERROR: invalid -pg-timeout: {e}")
    if pg_timeout <= 0:
        raise ConfigError(f"ERROR: -pg-timeout must be positive, got {args.pg_timeout}")

    log_level = args.log_level or settings_global.get('log_level') or 'INFO'
    resolve_log_level(log_level)

    return Config(
        conn_template=args.conn,
        pg_timeout=pg_timeout,
        datnames=tuple(datnames),
        sql_texts=tuple(sql_texts),
        label_columns=make_column_set(_split_csv(args.labels)),
        ignored_columns=make_column_set(_split_csv(args.ignored_columns)),
        prefix=args.prefix_metric or DEFAULT_PREFIX,
        jobs=args.jobs if args.jobs and args.jobs > 0 else 1,
        master_only=bool(args.master_only),
        replica_only=bool(args.replica_only),
        log_level=str(log_level).upper(),
        timezone=str(settings_global.get('timezone') or 'system'),
    )


def parse_flags(argv=None):
    return config_from_args(parse_args(argv))


# --- Connections, deadlines and cancellation ---

class RunContext:
    """
    Cancellation scope for one run. Cancelling it stops admission of new
    workers and asks every tracked connection to abort its current statement.
    """
    def __init__(self):
        self._cancelled = threading.Event()
        self._lock = threading.RLock()
        self._connections = set()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def cancel(self):
        self._cancelled.set()
        with self._lock:
            connections = list(self._connections)
        for conn in connections:
            _cancel_statement(conn)

    def check(self):
        if self.cancelled:
            raise CancelledError("context canceled")

    def track(self, conn):
        with self._lock:
            self._connections.add(conn)
        if self.cancelled:
            _cancel_statement(conn)

    def untrack(self, conn):
        with self._lock:
            self._connections.discard(conn)


def _cancel_statement(conn):
    try:
        conn.cancel()
    except psycopg2.Error as e:
        logging.debug(f"Cancel request failed: {e}")


@contextmanager
def statement_deadline(conn, timeout, what):
    """
    Cancels the connection's running statement if the block takes longer than
    timeout seconds. A failure caused by the expiry is raised as QueryError.
    """
    expired = threading.Event()

    def expire():
        expired.set()
        _cancel_statement(conn)

    timer = threading.Timer(timeout, expire)
    timer.daemon = True
    timer.start()
    try:
        yield
    except psycopg2.Error as e:
        if expired.is_set():
            raise QueryError(f"{what} timeout after {timeout:g}s: {e}") from e
        raise
    finally:
        timer.cancel()


def pg_connect(conn_template, dbname, timeout):
    dsn = f"{conn_template} dbname={dbname}"
    logging.debug(f"Connecting with DSN: {mask_password(dsn)}")
    conn = psycopg2.connect(dsn, connect_timeout=max(1, math.ceil(timeout)))
    conn.autocommit = True
    return conn


def close_connection(conn, timeout, dbname):
    """Closes conn on a helper thread, waiting at most timeout seconds."""
    def close():
        try:
            conn.close()
        except psycopg2.Error as e:
            logging.debug(f"[db={dbname}] close failed: {e}")

    closer = threading.Thread(target=close, name=f"close-{dbname}", daemon=True)
    closer.start()
    closer.join(timeout)
    if closer.is_alive():
        logging.warning(f"[db={dbname}] connection close did not finish within {timeout:g}s")


@contextmanager
def open_connection(cfg, ctx, dbname, connect):
    ctx.check()
    conn = connect(cfg.conn_template, dbname or ADMIN_DB, cfg.pg_timeout)
    ctx.track(conn)
    try:
        ctx.check()
        yield conn
    finally:
        ctx.untrack(conn)
        close_connection(conn, cfg.pg_timeout, dbname)


def _admin_query(cfg, ctx, sql, connect, what):
    try:
        with open_connection(cfg, ctx, ADMIN_DB, connect) as conn:
            cursor = conn.cursor()
            try:
                with statement_deadline(conn, cfg.pg_timeout, "query"):
                    cursor.execute(sql)
                return cursor.fetchall()
            finally:
                cursor.close()
    except (psycopg2.Error, QueryError) as e:
        raise AdminQueryError(f"{what}: {e}") from e


def resolve_db_list(cfg, ctx, connect=None):
    """
    Expands 'all' (checked on the first entry only) into every database
    except the templates and the administrative one.
    """
    if not (cfg.datnames and cfg.datnames[0].lower() == 'all'):
        return list(cfg.datnames)
    rows = _admin_query(cfg, ctx, LIST_DATABASES_SQL, connect or pg_connect, "database enumeration failed")
    db_list = [row[0] for row in rows]
    logging.info(f"Resolved 'all' to {len(db_list)} database(s): {db_list}")
    return db_list


def check_db_role_once(cfg, ctx, connect=None):
    rows = _admin_query(cfg, ctx, ROLE_PROBE_SQL, connect or pg_connect, "role probe failed")
    leader = int(rows[0][0]) if rows else 0
    logging.debug(f"Role probe: leader={leader}")
    if leader == 0 and cfg.master_only:
        raise RoleGateError("INFO: --master-only requested but node is replica")
    if leader == 1 and cfg.replica_only:
        raise RoleGateError("INFO: --replica-only requested but node is master")
    return leader


# --- Per-database pass ---

def run_statement(cfg, ctx, conn, dbname, sql_text, out):
    # psycopg2's client-side cursor receives the whole result set inside
    # execute(), so the query deadline covers both query start and row
    # transfer. Iterating the cursor afterwards reads local memory only.
    cursor = conn.cursor()
    try:
        try:
            with statement_deadline(conn, cfg.pg_timeout, "query"):
                cursor.execute(sql_text)
        except psycopg2.Error as e:
            raise QueryError(f"query error: {e}") from e

        if cursor.description is None:
            return 0
        metas = build_column_meta(
            [col[0] for col in cursor.description], cfg.prefix, cfg.label_columns, cfg.ignored_columns)

        emitted = 0
        for values in cursor:
            ctx.check()
            if len(values) != len(metas):
                logging.warning(f"[db={dbname}] row mismatch: vals={len(values)} fds={len(metas)}")
                continue
            labels, samples = project_row(metas, values)
            emitted += emit_row(labels, samples, dbname, out)
        return emitted
    finally:
        cursor.close()


def process_db(cfg, ctx, dbname, connect=None, out=None):
    """
    Runs every configured statement, in order, on one connection to dbname.
    The first failing statement aborts the pass for this database.
    """
    if out is None:
        out = sys.stdout
    start = time.time()
    emitted = 0
    with open_connection(cfg, ctx, dbname, connect or pg_connect) as conn:
        for sql_text in cfg.sql_texts:
            ctx.check()
            emitted += run_statement(cfg, ctx, conn, dbname, sql_text, out)
    logging.debug(f"[db={dbname}] emitted {emitted} sample(s) from {len(cfg.sql_texts)} statement(s) "
                  f"in {time.time() - start:.3f} seconds")
    return emitted


# --- Fan-out ---

def _acquire(sem, ctx, poll=0.05):
    while not ctx.cancelled:
        if sem.acquire(timeout=poll):
            if ctx.cancelled:
                sem.release()
                return False
            return True
    return False


def _run_worker(cfg, ctx, dbname, sem, connect, out):
    try:
        process_db(cfg, ctx, dbname, connect=connect, out=out)
    except (WatcherError, psycopg2.Error) as e:
        logging.error(f"DB {dbname}: {e}")
    except Exception as e:
        logging.error(f"[db={dbname}] panic recovered: {e}\nTraceback:\n{traceback.format_exc()}")
    finally:
        sem.release()


def run(cfg, ctx=None, connect=None, out=None):
    """
    Resolves the database list, applies the role gate, then processes up to
    cfg.jobs databases at a time. Per-database failures are logged and do not
    fail the run; cancellation does.
    """
    ctx = ctx or RunContext()
    connect = connect or pg_connect
    if out is None:
        out = sys.stdout

    db_list = resolve_db_list(cfg, ctx, connect)
    if cfg.master_only or cfg.replica_only:
        check_db_role_once(cfg, ctx, connect)

    logging.info(f"Processing {len(db_list)} database(s) with up to {cfg.jobs} worker(s)")
    sem = threading.BoundedSemaphore(cfg.jobs)
    admitted = 0
    with ThreadPoolExecutor(max_workers=cfg.jobs, thread_name_prefix='pg_watcher') as executor:
        for dbname in db_list:
            if not _acquire(sem, ctx):
                break
            executor.submit(_run_worker, cfg, ctx, dbname, sem, connect, out)
            admitted += 1
        # Drain to the full budget: every admitted worker has released its slot
        for _ in range(cfg.jobs):
            sem.acquire()

    if ctx.cancelled:
        raise CancelledError(f"context canceled after admitting {admitted} of {len(db_list)} database(s)")
    return admitted


# --- Entry point ---

def install_signal_handlers(ctx):
    """Cancels ctx on SIGTERM/SIGINT; returns the previous handlers."""
    def signal_handler(signum, frame):
        logging.warning(f"Received {signal.Signals(signum).name}; cancelling run")
        ctx.cancel()

    previous = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, signal_handler)
    return previous


def main(argv=None):
    try:
        args = parse_args(argv)
        if args.version:
            print(__version__)
            return 0
        cfg = config_from_args(args)
        restore_logging = configure_logging(cfg.log_level, cfg.timezone)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    try:
        if args.settings:
            logging.debug(f"Loaded settings from {args.settings} (passwords hidden): {masked_settings(args.loaded_settings)}")
        logging.debug(f"Connection template: {mask_password(cfg.conn_template)}, pg_timeout={cfg.pg_timeout:g}s")

        ctx = RunContext()
        previous = install_signal_handlers(ctx)
        try:
            run(cfg, ctx)
        except WatcherError as e:
            print(e, file=sys.stderr)
            return 1
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
        return 0
    finally:
        restore_logging()


if __name__ == "__main__":
    sys.exit(main())
