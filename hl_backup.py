"""
========================================================================================================================
HL-BACKUP: MYSQL TO S3 ENCRYPTED EXPORT
========================================================================================================================

Overview
--------
Single-run export tool: takes a consistent logical snapshot of a MySQL database, compresses it with xz, encrypts it to
an age public key and uploads it to Amazon S3 or any S3-compatible provider (Backblaze B2, MinIO, ...).
Designed to be called from cron / systemd timers / CI schedulers with heartbeat URLs pointing at a monitoring service.

Called with:
  hl-backup dump --db-database=shop --encryption-key=age1... \\
                 --s3-access-key=... --s3-secret-key=... --s3-bucket=backups [options]
  hl-backup help [command]
  hl-backup version

------------------------------------------------------------------------------------------------------------------------
FEATURES
------------------------------------------------------------------------------------------------------------------------
1) Stages (in order)
   1) Heartbeat Start   (skipped in dry-run)
   2) Dependency Check  (age, mysqldump, python, xz)
   3) Connect           (PyMySQL)
   4) Scan Tables       (SHOW TABLES + allowlist/blocklist)
   5) Dump              (mysqldump --single-transaction -> temp file)
   6) Compress          (xz -> <dump>.xz)
   7) Encrypt           (age -> <dump>.xz.age)
   8) Upload            (boto3 -> s3://<bucket>/<rendered filename>; skipped in dry-run)
   9) Heartbeat Finish  (time_taken + uploaded_url; skipped in dry-run)

2) Table Filtering
   - allowlist: authoritative when set; every entry must exist or the run fails naming all missing tables
   - blocklist: subtractive, applied after the allowlist
   - result keeps the order reported by the database

3) Artifact Cleanup
   - every temp file is registered before the tool that fills it runs
   - all registered files are removed on failure AND at the end of a successful run

4) Heartbeats
   - form-encoded POST, best effort: transport errors are logged, never raised
   - exactly one Start followed by exactly one of Finish / Fail

5) Destination Filename Template
   - {{db-database}} {{db-user}} {{db-host}} {{db-port}} {{YYYY}} {{MM}} {{DD}} {{hh}} {{mm}} {{ss}} (UTC)
   - unknown tokens are left verbatim

6) Debug Logging
   - --debug prints every command line with secrets replaced by '*' runs

========================================================================================================================
"""
import argparse
import datetime as dt
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
import pymysql
import pytz
import requests
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

__version__ = "1.2.0"


# ============================================================================
# Exceptions
# ============================================================================
class BackupError(Exception):
    """Base backup exception."""


class ConfigurationError(BackupError):
    """Raised when an option is missing or invalid."""


class DependencyMissingError(BackupError):
    """Raised when an external tool required by the pipeline is not installed."""

    def __init__(self, missing: Sequence[str]):
        super().__init__("Missing dependencies: {}".format(", ".join(missing)))
        self.missing = list(missing)


class DatabaseConnectionError(BackupError):
    """Raised when the database cannot be reached or queried."""


class TableSelectionError(BackupError):
    """Raised when table filtering cannot produce a usable table set."""


class StageExecutionError(BackupError):
    """Raised when dump, compress, encrypt or upload fails."""

    def __init__(self, stage: str, message: str, output: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.stage = stage
        self.output = list(output or [])


class ArtifactIntegrityError(BackupError):
    """Raised when a stage output file is missing or implausibly small."""


# ============================================================================
# Constants
# ============================================================================
APP_NAME = "hl-backup"
APP_AUTHOR = "Luke Lanchester <hlbackup@lukelanchester.com>"

EXIT_SUCCESS = 0
EXIT_ERROR = 1

DEFAULT_COMPRESSION = 6
MIN_ARTIFACT_BYTES = 50
MASK_CHAR = "*"
DUMP_FILE_PREFIX = "hl-mysql-export"
DEFAULT_S3_FILE_NAME = "export-{{db-database}}-{{YYYY}}-{{MM}}-{{DD}}-{{hh}}{{mm}}{{ss}}.sql.xz.age"

TEMPLATE_TOKEN_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")

# Stage labels (human-friendly, used in logs and StageExecutionError.stage)
STAGE_HEARTBEAT_START = "Heartbeat Start"
STAGE_DEPENDENCY_CHECK = "Dependency Check"
STAGE_CONNECT = "Connect"
STAGE_SCAN_TABLES = "Scan Tables"
STAGE_DUMP = "Dump"
STAGE_COMPRESS = "Compress"
STAGE_ENCRYPT = "Encrypt"
STAGE_UPLOAD = "Upload"
STAGE_DRY_RUN_SKIP = "Dry Run Skip"
STAGE_HEARTBEAT_FINISH = "Heartbeat Finish"

# name -> (binary, version flag); python is reported from the running interpreter
DEPENDENCY_CHECKS = {
    "age": ("age", "--version"),
    "mysqldump": ("mysqldump", "--version"),
    "python": (None, None),
    "xz": ("xz", "--version"),
}

LOG_FILE_HANDLE = None
LOG_DEBUG_ENABLED = False


# ============================================================================
# Logging
# ============================================================================
def now_utc() -> dt.datetime:
    return dt.datetime.now(pytz.utc)


def ensure_directory(path: str) -> None:
    if path and not os.path.isdir(path):
        os.makedirs(path, exist_ok=True)


def initialize_log_file(log_dir: str, log_filename: str) -> None:
    global LOG_FILE_HANDLE
    ensure_directory(log_dir)
    LOG_FILE_HANDLE = open(os.path.join(log_dir, log_filename), "a", encoding="utf-8")


def close_log_file() -> None:
    global LOG_FILE_HANDLE
    try:
        if LOG_FILE_HANDLE:
            LOG_FILE_HANDLE.flush()
            LOG_FILE_HANDLE.close()
    except OSError:
        pass
    LOG_FILE_HANDLE = None


def set_debug_logging(enabled: bool) -> None:
    global LOG_DEBUG_ENABLED
    LOG_DEBUG_ENABLED = bool(enabled)


def build_log_filename() -> str:
    return "{}__{}.log".format(APP_NAME, now_utc().strftime("%Y%m%d_%H%M%S"))


def log_message(message: str) -> None:
    timestamp = now_utc().strftime("%Y-%m-%d %H:%M:%S.%f")
    line = "{} | {}".format(timestamp, message)
    print(line)
    if LOG_FILE_HANDLE:
        LOG_FILE_HANDLE.write(line + "\n")
        LOG_FILE_HANDLE.flush()


def log_debug(message: str) -> None:
    if LOG_DEBUG_ENABLED:
        log_message(message)


def print_error(message: str) -> None:
    print(message, file=sys.stderr)
    if LOG_FILE_HANDLE:
        LOG_FILE_HANDLE.write(message + "\n")
        LOG_FILE_HANDLE.flush()


def bytes_to_human(num_bytes: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(num_bytes)
    idx = 0
    while size > 1024 and idx < len(units) - 1:
        size /= 1024
        idx += 1
    return "{} {}".format(round(size, 2), units[idx])


# ============================================================================
# Config helpers
# ============================================================================
def require_config(cfg: Dict[str, Any], key: str, allow_empty_str: bool = False) -> Any:
    if key not in cfg or cfg[key] is None:
        log_debug("[CONFIG][MISSING] required option not found: --{}".format(key))
        raise ConfigurationError("The --{} option is required.".format(key))
    value = cfg[key]
    if (not allow_empty_str) and isinstance(value, str) and value == "":
        log_debug("[CONFIG][MISSING] required option is empty-string: --{}".format(key))
        raise ConfigurationError("The --{} option must have a value.".format(key))
    return value


def get_config(cfg: Dict[str, Any], key: str, default: Any = None) -> Any:
    value = cfg[key] if key in cfg else None
    return default if value is None else value


def parse_int_option(cfg: Dict[str, Any], key: str, default: int) -> int:
    value = get_config(cfg, key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError("The --{} option must be an integer, got '{}'.".format(key, value))


def parse_port_option(cfg: Dict[str, Any], key: str, default: int) -> int:
    port = parse_int_option(cfg, key, default)
    if not 1 <= port <= 65535:
        raise ConfigurationError("The --{} option must be between 1 and 65535, got {}.".format(key, port))
    return port


def parse_table_list(raw: Any) -> Tuple[str, ...]:
    """Split a comma-separated option into unique, non-empty table names (first occurrence wins)."""
    if not raw:
        return ()
    if isinstance(raw, str):
        raw = raw.split(",")
    tables: List[str] = []
    for item in raw:
        name = (item or "").strip()
        if name and name not in tables:
            tables.append(name)
    return tuple(tables)


@dataclass(frozen=True)
class DumperOptions:
    """Everything one export run needs. Built once per invocation."""

    db_database: str
    encryption_key: str
    s3_access_key: str
    s3_secret_key: str
    s3_bucket: str
    db_host: str = "localhost"
    db_port: int = 3306
    db_username: str = "root"
    db_password: str = ""
    db_tables_allowlist: Tuple[str, ...] = ()
    db_tables_blocklist: Tuple[str, ...] = ()
    compression_level: int = DEFAULT_COMPRESSION
    heartbeat_start: str = ""
    heartbeat_finish: str = ""
    heartbeat_fail: str = ""
    s3_endpoint: str = ""
    s3_region: str = ""
    s3_file_name: str = DEFAULT_S3_FILE_NAME
    dry_run: bool = False
    temp_dir: Optional[str] = None


def build_dumper_options(cfg: Dict[str, Any]) -> DumperOptions:
    """Validate raw option values (keyed by their --option name) into a DumperOptions."""
    return DumperOptions(
        db_host=str(get_config(cfg, "db-host", "localhost")),
        db_port=parse_port_option(cfg, "db-port", 3306),
        db_username=str(get_config(cfg, "db-username", "root")),
        db_password=str(get_config(cfg, "db-password", "")),
        db_database=str(require_config(cfg, "db-database")),
        db_tables_allowlist=parse_table_list(get_config(cfg, "db-tables-allowlist", "")),
        db_tables_blocklist=parse_table_list(get_config(cfg, "db-tables-blocklist", "")),
        compression_level=parse_int_option(cfg, "compression-level", DEFAULT_COMPRESSION),
        encryption_key=str(require_config(cfg, "encryption-key")),
        heartbeat_start=str(get_config(cfg, "heartbeat-start", "")),
        heartbeat_finish=str(get_config(cfg, "heartbeat-finish", "")),
        heartbeat_fail=str(get_config(cfg, "heartbeat-fail", "")),
        s3_access_key=str(require_config(cfg, "s3-access-key")),
        s3_secret_key=str(require_config(cfg, "s3-secret-key")),
        s3_endpoint=str(get_config(cfg, "s3-endpoint", "")),
        s3_region=str(get_config(cfg, "s3-region", "")),
        s3_bucket=str(require_config(cfg, "s3-bucket")),
        s3_file_name=str(get_config(cfg, "s3-file-name", DEFAULT_S3_FILE_NAME)),
        dry_run=bool(get_config(cfg, "dry-run", False)),
        temp_dir=get_config(cfg, "temp-dir", None) or None,
    )


# ============================================================================
# Filename template
# ============================================================================
def build_template_tokens(opts: DumperOptions, now: dt.datetime) -> Dict[str, str]:
    now = now.astimezone(pytz.utc)
    return {
        "db-database": opts.db_database,
        "db-user": opts.db_username,
        "db-host": opts.db_host,
        "db-port": str(opts.db_port),
        "YYYY": now.strftime("%Y"),
        "MM": now.strftime("%m"),
        "DD": now.strftime("%d"),
        "hh": now.strftime("%H"),
        "mm": now.strftime("%M"),
        "ss": now.strftime("%S"),
    }


def render_template(template: str, tokens: Dict[str, str]) -> str:
    # Single pass: substituted values are never re-scanned for tokens.
    def replace(match):
        name = match.group(1)
        return tokens[name] if name in tokens else match.group(0)

    return TEMPLATE_TOKEN_PATTERN.sub(replace, template)


def build_destination_url(bucket: str, filename: str) -> str:
    return "s3://{}/{}".format(bucket, filename.lstrip("/"))


# ============================================================================
# Commands
# ============================================================================
def mask_secrets(text: str, secrets: Optional[Sequence[str]]) -> str:
    # Longest first so a secret containing another secret is fully masked.
    for secret in sorted({s for s in (secrets or []) if s}, key=len, reverse=True):
        text = text.replace(secret, MASK_CHAR * len(secret))
    return text


def run_command_capture_output(command: str) -> Tuple[int, List[str]]:
    process = subprocess.run(command, shell=True, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                             universal_newlines=True)
    return process.returncode, (process.stdout or "").splitlines()


def execute_command(args: Sequence[str], debug_replace: Optional[Sequence[str]] = None) -> Tuple[int, List[str]]:
    """Run already shell-quoted tokens as one shell command line.

    Every string in ``debug_replace`` is masked in the logged command. The exit code is returned, not checked.
    """
    cmd = " ".join(args)
    log_debug("[CMD] running command: {}".format(mask_secrets(cmd, debug_replace)))
    exit_code, output = run_command_capture_output(cmd)
    log_debug("[CMD] result: {}".format(exit_code))
    return exit_code, output


# ============================================================================
# Heartbeats
# ============================================================================
def send_heartbeat(url: Optional[str], data: Optional[Dict[str, Any]] = None) -> None:
    if not url:
        return
    log_debug("[HEARTBEAT] sending url={} data={}".format(url, data or {}))
    try:
        response = requests.post(url, data=data or None)
        log_debug("[HEARTBEAT] posted url={} status={}".format(url, response.status_code))
    except requests.RequestException as exc:
        log_message("[HEARTBEAT][WARN] failed to send heartbeat url={} err={}".format(url, exc))


# ============================================================================
# Artifacts
# ============================================================================
class ArtifactTracker:
    """Owns every temp file created during one run and deletes them on cleanup()."""

    def __init__(self) -> None:
        self._paths: List[str] = []

    @property
    def paths(self) -> List[str]:
        return list(self._paths)

    def register(self, path: str) -> None:
        if path not in self._paths:
            self._paths.append(path)
            log_debug("[CLEANUP] tracking file={}".format(path))

    def cleanup(self) -> None:
        for path in self._paths:
            try:
                os.remove(path)
                log_debug("[CLEANUP] removed file={}".format(path))
            except FileNotFoundError:
                continue
            except OSError as exc:
                log_message("[CLEANUP][WARN] failed to remove file={} err={}".format(path, exc))


def verify_artifact(path: str, label: str) -> int:
    if not os.path.isfile(path):
        raise ArtifactIntegrityError("{} output file not created.".format(label))
    filesize = os.path.getsize(path)
    if filesize < MIN_ARTIFACT_BYTES:
        raise ArtifactIntegrityError("{} output file too small ({} bytes).".format(label, filesize))
    return filesize


# ============================================================================
# Dependencies
# ============================================================================
def probe_dependency(binary: str, version_flag: str) -> Dict[str, Any]:
    path = shutil.which(binary)
    if not path:
        return {"found": False, "path": None, "version": None}
    _rc, lines = run_command_capture_output("{} {}".format(shlex.quote(path), version_flag))
    return {"found": True, "path": path, "version": lines[0].strip() if lines else None}


def probe_dependencies() -> Dict[str, Dict[str, Any]]:
    deps: Dict[str, Dict[str, Any]] = {}
    for name, (binary, version_flag) in DEPENDENCY_CHECKS.items():
        if binary is None:
            deps[name] = {"found": True, "path": sys.executable, "version": "Python " + platform.python_version()}
            continue
        deps[name] = probe_dependency(binary, version_flag)
    return deps


def check_dependencies(dependencies: Dict[str, Dict[str, Any]]) -> None:
    log_debug("[DEPS] initializing...")
    missing = []
    for name, info in dependencies.items():
        if info.get("found") is not True:
            missing.append(name)
        else:
            log_debug("[DEPS] dependency found: {} @ {}".format(name, info.get("version")))
    if missing:
        raise DependencyMissingError(missing)
    log_debug("[DEPS] all dependencies found")


# ============================================================================
# Database
# ============================================================================
def create_mysql_connection(opts: DumperOptions):
    kwargs = dict(user=opts.db_username, password=opts.db_password, database=opts.db_database, charset="utf8mb4")
    if opts.db_host.startswith("/"):
        kwargs["unix_socket"] = opts.db_host
    else:
        kwargs["host"] = opts.db_host
        kwargs["port"] = opts.db_port
    return pymysql.connect(**kwargs)


def connect_to_database(opts: DumperOptions):
    log_debug("[DB] connecting...")
    log_debug("[DB]   host: {}".format(opts.db_host))
    log_debug("[DB]   port: {}".format(opts.db_port))
    log_debug("[DB]   database: {}".format(opts.db_database))
    log_debug("[DB]   username: {}".format(opts.db_username))
    log_debug("[DB]   password: {}".format(MASK_CHAR * len(opts.db_password)))
    try:
        conn = create_mysql_connection(opts)
    except pymysql.MySQLError as exc:
        raise DatabaseConnectionError("Unable to connect to database: {}".format(exc)) from exc
    log_debug("[DB] connected to database")
    return conn


def close_database_connection(conn) -> None:
    try:
        conn.close()
    except pymysql.MySQLError as exc:
        log_message("[DB][WARN] failed to close connection err={}".format(exc))


def list_database_tables(conn) -> List[str]:
    cursor = conn.cursor()
    try:
        cursor.execute("SHOW TABLES")
        return [row[0] for row in cursor.fetchall()]
    finally:
        cursor.close()


# ============================================================================
# Table selection
# ============================================================================
def select_tables(all_tables: Sequence[str],
                  allowlist: Sequence[str] = (),
                  blocklist: Sequence[str] = ()) -> List[str]:
    """Filter the database table listing down to the tables to dump.

    A non-empty allowlist is authoritative: every entry must exist. The result keeps the database's order,
    not the allowlist's. The blocklist is applied afterwards.
    """
    tables: List[str] = []
    seen = set()
    for table in all_tables:
        if table not in seen:
            tables.append(table)
            seen.add(table)

    total_tables = len(tables)
    if total_tables == 0:
        raise TableSelectionError("No tables found to export.")
    log_debug("[SCAN]   found {} table(s) in scan".format(total_tables))

    if allowlist:
        missing = []
        for table in allowlist:
            if table not in seen and table not in missing:
                missing.append(table)
                log_message("[SCAN][ERROR] allowlist table not found: {}".format(table))
        if missing:
            raise TableSelectionError("Required allowlist tables not found: {}".format(", ".join(missing)))
        allowed = set(allowlist)
        tables = [table for table in tables if table in allowed]
        for table in tables:
            log_debug("[SCAN]   including allowlist table: {}".format(table))

    if blocklist:
        blocked = set(blocklist)
        kept = []
        for table in tables:
            if table in blocked:
                log_debug("[SCAN]   skipping blocklist table: {}".format(table))
                continue
            kept.append(table)
        tables = kept

    if not tables:
        raise TableSelectionError("No tables found to export after filtering.")
    if len(tables) != total_tables:
        log_debug("[SCAN]   reduced to {} table(s) after filtering".format(len(tables)))
    return tables


def scan_tables(conn, opts: DumperOptions) -> List[str]:
    log_debug("[SCAN] scanning...")
    try:
        all_tables = list_database_tables(conn)
    except pymysql.MySQLError as exc:
        raise DatabaseConnectionError("Unable to list tables: {}".format(exc)) from exc
    return select_tables(all_tables, opts.db_tables_allowlist, opts.db_tables_blocklist)


# ============================================================================
# Stages
# ============================================================================
def dump_tables(tables: Sequence[str], opts: DumperOptions, tracker: ArtifactTracker) -> str:
    log_debug("[DUMP] dumping...")

    try:
        fd, output_file = tempfile.mkstemp(prefix=DUMP_FILE_PREFIX, dir=opts.temp_dir)
    except OSError as exc:
        raise ArtifactIntegrityError("Unable to create dump file in {}: {}".format(
            opts.temp_dir or tempfile.gettempdir(), exc
        )) from exc
    tracker.register(output_file)
    os.close(fd)
    log_debug("[DUMP]   created output file: {}".format(output_file))

    args = [
        "mysqldump",
        "--add-drop-table",
        "--add-locks",
        "--allow-keywords",
        "--compress",
        "--create-options",
        "--disable-keys",
        "--extended-insert",
        "--max_allowed_packet=512M",
        "--no-tablespaces",
        "--quick",
        "--set-charset",
        "--single-transaction",  # consistent snapshot without locking every table
    ]
    if opts.db_host.startswith("/"):
        args.append("--socket=" + shlex.quote(opts.db_host))
    else:
        args.append("--host=" + shlex.quote(opts.db_host))
        args.append("--port=" + shlex.quote(str(opts.db_port)))
    args.extend([
        "--user=" + shlex.quote(opts.db_username),
        "--password=" + shlex.quote(opts.db_password),
        shlex.quote(opts.db_database),
    ])
    args.extend(shlex.quote(table) for table in tables)
    args.append("> " + shlex.quote(output_file))

    debug_replace = [shlex.quote(opts.db_password)] if opts.db_password else []
    result, output = execute_command(args, debug_replace=debug_replace)
    if result != 0:
        raise StageExecutionError(STAGE_DUMP, "Unable to dump database: {}".format("\n".join(output)), output)

    filesize = verify_artifact(output_file, "Dumped database")
    log_debug("[DUMP]   database dumped successfully")
    log_debug("[DUMP]   dump size = {}".format(bytes_to_human(filesize)))
    return output_file


def compress_dump(input_file: str, opts: DumperOptions, tracker: ArtifactTracker) -> str:
    output_file = input_file + ".xz"
    tracker.register(output_file)
    log_debug("[COMPRESS] compressing...")

    level = opts.compression_level if 0 <= opts.compression_level <= 9 else DEFAULT_COMPRESSION
    result, output = execute_command([
        "xz",
        "--compress",
        "--keep",
        "--force",
        "--stdout",
        "-" + str(level),
        shlex.quote(input_file),
        "> " + shlex.quote(output_file),
    ])
    if result != 0:
        raise StageExecutionError(STAGE_COMPRESS, "Unable to compress file: {}".format("\n".join(output)), output)

    filesize = verify_artifact(output_file, "Compressed")
    log_debug("[COMPRESS]   file compressed successfully")
    log_debug("[COMPRESS]   compressed size = {}".format(bytes_to_human(filesize)))
    return output_file


def encrypt_dump(input_file: str, opts: DumperOptions, tracker: ArtifactTracker) -> str:
    output_file = input_file + ".age"
    tracker.register(output_file)
    log_debug("[ENCRYPT] encrypting...")

    recipient = shlex.quote(opts.encryption_key)
    result, output = execute_command([
        "age",
        "--encrypt",
        "-r " + recipient,
        "-o " + shlex.quote(output_file),
        shlex.quote(input_file),
    ], debug_replace=[recipient])
    if result != 0:
        raise StageExecutionError(STAGE_ENCRYPT, "Unable to encrypt file: {}".format("\n".join(output)), output)

    filesize = verify_artifact(output_file, "Encrypted")
    log_debug("[ENCRYPT]   file encrypted successfully")
    log_debug("[ENCRYPT]   encrypted size = {}".format(bytes_to_human(filesize)))
    return output_file


def create_s3_client(opts: DumperOptions):
    kwargs = dict(
        aws_access_key_id=opts.s3_access_key,
        aws_secret_access_key=opts.s3_secret_key,
    )
    if opts.s3_region:
        kwargs["region_name"] = opts.s3_region
    if opts.s3_endpoint:
        kwargs["endpoint_url"] = opts.s3_endpoint
    return boto3.client("s3", **kwargs)


def upload_dump(input_file: str, opts: DumperOptions, now: dt.datetime) -> str:
    filename = render_template(opts.s3_file_name, build_template_tokens(opts, now))
    key = filename.lstrip("/")
    output_url = build_destination_url(opts.s3_bucket, filename)

    log_debug("[UPLOAD] uploading...")
    log_debug("[UPLOAD]   destination: {}".format(output_url))
    log_debug("[UPLOAD]   access_key={} region={} endpoint={}".format(
        MASK_CHAR * len(opts.s3_access_key), opts.s3_region or "-", opts.s3_endpoint or "-"
    ))

    try:
        s3_client = create_s3_client(opts)
        s3_client.upload_file(input_file, opts.s3_bucket, key)
    except (BotoCoreError, ClientError, S3UploadFailedError, ValueError) as exc:
        raise StageExecutionError(STAGE_UPLOAD, "Unable to upload file: {}".format(exc), [str(exc)]) from exc

    log_debug("[UPLOAD]   file uploaded")
    return output_url


# ============================================================================
# Pipeline
# ============================================================================
def enter_stage(stage: str) -> str:
    log_debug("[STAGE] {}".format(stage))
    return stage


def dump_database(opts: DumperOptions,
                  dependencies: Optional[Dict[str, Dict[str, Any]]] = None,
                  tracker: Optional[ArtifactTracker] = None) -> str:
    """
    Run one export: dependency check -> connect -> scan -> dump -> compress -> encrypt -> upload.

    Returns the s3:// destination, or "" in dry-run mode.

    Notes:
      - ``dependencies`` is the probe result; probed once here when not supplied.
      - Any failure removes every registered artifact, sends the fail heartbeat (not in dry-run) and re-raises.
      - Success sends the finish heartbeat (not in dry-run) then removes every artifact; only the remote copy is kept.
    """
    tracker = tracker if tracker is not None else ArtifactTracker()
    log_message("[BOOT] starting export database={} dry_run={}".format(opts.db_database, opts.dry_run))

    stage = enter_stage(STAGE_HEARTBEAT_START)
    if not opts.dry_run:
        send_heartbeat(opts.heartbeat_start)

    timer_start = time.monotonic()

    try:
        stage = enter_stage(STAGE_DEPENDENCY_CHECK)
        check_dependencies(dependencies if dependencies is not None else probe_dependencies())

        stage = enter_stage(STAGE_CONNECT)
        conn = connect_to_database(opts)
        try:
            stage = enter_stage(STAGE_SCAN_TABLES)
            tables = scan_tables(conn, opts)
        finally:
            close_database_connection(conn)

        stage = enter_stage(STAGE_DUMP)
        dump_file = dump_tables(tables, opts, tracker)

        stage = enter_stage(STAGE_COMPRESS)
        compressed_file = compress_dump(dump_file, opts, tracker)

        stage = enter_stage(STAGE_ENCRYPT)
        encrypted_file = encrypt_dump(compressed_file, opts, tracker)

        if opts.dry_run:
            stage = enter_stage(STAGE_DRY_RUN_SKIP)
            log_debug("[UPLOAD] skipping upload due to dry-run mode")
            upload_url = ""
        else:
            stage = enter_stage(STAGE_UPLOAD)
            upload_url = upload_dump(encrypted_file, opts, now_utc())
    except BaseException as exc:
        log_message("[ERROR] stage={} failed err={!r}".format(stage, exc))
        tracker.cleanup()
        # interrupts (Ctrl-C, SystemExit) still clean up but are not reported as failed runs
        if isinstance(exc, Exception) and not opts.dry_run:
            send_heartbeat(opts.heartbeat_fail, {"error": str(exc)})
        raise

    time_taken = round(time.monotonic() - timer_start, 4)

    enter_stage(STAGE_HEARTBEAT_FINISH)
    if not opts.dry_run:
        send_heartbeat(opts.heartbeat_finish, {"time_taken": time_taken, "uploaded_url": upload_url})

    tracker.cleanup()
    log_message("[DONE] export finished database={} time_taken={}s uploaded_url={}".format(
        opts.db_database, time_taken, upload_url or "-"
    ))
    return upload_url


# ============================================================================
# CLI
# ============================================================================
def build_arg_parser() -> Tuple[argparse.ArgumentParser, Dict[str, argparse.ArgumentParser]]:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Export a MySQL database, encrypted, to S3.")
    subparsers = parser.add_subparsers(dest="command", metavar="method")

    dump = subparsers.add_parser("dump", help="Export, compress, encrypt and upload a database")
    dump.add_argument("--db-host", default="localhost",
                      help="The database host e.g. localhost, 127.0.0.1, /var/socket, db.host.tld")
    dump.add_argument("--db-port", default="3306", help="The database port")
    dump.add_argument("--db-username", default="root", help="The database username")
    dump.add_argument("--db-password", default="", help="The database password")
    dump.add_argument("--db-database", default=None, help="[REQUIRED] The database to export")
    dump.add_argument("--db-tables-allowlist", default="", help="A comma-separated list of tables to export")
    dump.add_argument("--db-tables-blocklist", default="", help="A comma-separated list of tables to skip")
    dump.add_argument("--compression-level", default=str(DEFAULT_COMPRESSION), help="Compression level from 0 to 9")
    dump.add_argument("--encryption-key", default=None, help="[REQUIRED] The age public key to encrypt the file with")
    dump.add_argument("--heartbeat-start", default="", help="A URL to POST to when starting an export")
    dump.add_argument("--heartbeat-finish", default="", help="A URL to POST to when an export finishes")
    dump.add_argument("--heartbeat-fail", default="", help="A URL to POST to when an export fails")
    dump.add_argument("--s3-access-key", default=None, help="[REQUIRED] S3 access key")
    dump.add_argument("--s3-secret-key", default=None, help="[REQUIRED] S3 secret key")
    dump.add_argument("--s3-endpoint", default="",
                      help="S3 endpoint e.g. https://s3.us-west-001.backblazeb2.com to use Backblaze B2")
    dump.add_argument("--s3-region", default="", help="S3 region")
    dump.add_argument("--s3-bucket", default=None, help="[REQUIRED] S3 bucket")
    dump.add_argument("--s3-file-name", default=DEFAULT_S3_FILE_NAME,
                      help="The destination filename for S3. Can include directories and substitutions.")
    dump.add_argument("--temp-dir", default=None, help="Directory for intermediate files (default: system temp)")
    dump.add_argument("--log-dir", default="", help="If set, also append log lines to a file in this directory")
    dump.add_argument("--debug", action="store_true", help="If set, output debug information")
    dump.add_argument("--dry-run", action="store_true", help="If set, perform the export but don't upload")

    help_cmd = subparsers.add_parser("help", help="Show help for the tool or one method")
    help_cmd.add_argument("method", nargs="?", default=None, help="Provide help for the given method")

    version_cmd = subparsers.add_parser("version", help="Show version and dependency information")

    return parser, {"dump": dump, "help": help_cmd, "version": version_cmd}


def run_help(parser: argparse.ArgumentParser,
             commands: Dict[str, argparse.ArgumentParser],
             method: Optional[str]) -> int:
    if method is None:
        print("{} v{}".format(APP_NAME, __version__))
        parser.print_help()
        return EXIT_SUCCESS
    if method not in commands:
        print_error("Unknown {} command to help with: {}".format(APP_NAME, method))
        return EXIT_ERROR
    print("{} v{}".format(APP_NAME, __version__))
    commands[method].print_help()
    return EXIT_SUCCESS


def run_version(dependencies: Optional[Dict[str, Dict[str, Any]]] = None) -> int:
    print(APP_NAME)
    print("  version {}".format(__version__))
    print("  created by {}".format(APP_AUTHOR))
    print("dependencies:")
    deps = dependencies if dependencies is not None else probe_dependencies()
    for name, dep in deps.items():
        if dep.get("found") is not True:
            print("  {} WARNING: dependency not found".format(name))
        else:
            print("  {} @ {} [{}]".format(name, dep.get("path"), dep.get("version")))
    return EXIT_SUCCESS


def run_dump(args: argparse.Namespace) -> int:
    cfg = {key.replace("_", "-"): value for key, value in vars(args).items()}
    set_debug_logging(bool(cfg.get("debug")))
    if cfg.get("log-dir"):
        initialize_log_file(cfg["log-dir"], build_log_filename())

    try:
        opts = build_dumper_options(cfg)
        upload_url = dump_database(opts)
    except ConfigurationError as exc:
        print_error(str(exc))
        return EXIT_ERROR
    except BackupError as exc:
        print_error("Dump failed to complete: {}".format(exc))
        return EXIT_ERROR
    except Exception as exc:
        print_error("Dump failed to complete: {}: {}".format(type(exc).__name__, exc))
        return EXIT_ERROR
    finally:
        close_log_file()

    print(upload_url)
    return EXIT_SUCCESS


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser, commands = build_arg_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse exits 2 on usage errors; every reported error is exit code 1 here
        return EXIT_SUCCESS if exc.code in (0, None) else EXIT_ERROR

    command = args.command or "help"
    if command == "help":
        return run_help(parser, commands, getattr(args, "method", None))
    if command == "version":
        return run_version()
    return run_dump(args)


if __name__ == "__main__":
    sys.exit(main())
