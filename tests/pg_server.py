"""Throwaway PostgreSQL server for the database-backed tests."""

from __future__ import annotations

import glob
import os
import shutil
import socket
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

PG_BINARIES = ("initdb", "pg_ctl", "postgres")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def find_pg_binary(name: str) -> str | None:
    """Locate a server binary: ``$INITDB``-style override, then PATH, then Debian's versioned dirs."""

    override = os.environ.get(name.upper())
    if override:
        return override
    found = shutil.which(name)
    if found is not None:
        return found
    versioned = sorted(glob.glob(f"/usr/lib/postgresql/*/bin/{name}"), reverse=True)
    return versioned[0] if versioned else None


def postgres_available() -> bool:
    return all(find_pg_binary(name) is not None for name in PG_BINARIES)


def _run(args: list[str], step: str, log_file: Path | None = None) -> None:
    result = subprocess.run(args, capture_output=True, text=True)
    if result.returncode == 0:
        return
    detail = result.stderr.strip()
    if log_file is not None and log_file.exists():
        detail = f"{detail}\nlog: {log_file.read_text()}"
    raise RuntimeError(f"{step} failed: {detail}")


@contextmanager
def temporary_postgres(base_dir: Path | None = None) -> Iterator[str]:
    """Run initdb and a private server on a free port; yield its SQLAlchemy URL."""

    binaries = {name: find_pg_binary(name) for name in PG_BINARIES}
    missing = [name for name, path in binaries.items() if path is None]
    if missing:
        raise RuntimeError(f"PostgreSQL binaries not found: {', '.join(missing)}")

    root = Path(tempfile.mkdtemp(prefix="equipment-pg-")) if base_dir is None else Path(base_dir)
    data_dir = root / "pgdata"
    log_file = root / "postgresql.log"
    data_dir.mkdir(parents=True, exist_ok=True)
    # Unix socket paths are length limited, so keep the socket dir short.
    socket_dir = Path(tempfile.mkdtemp(prefix="pgsock-"))

    _run(
        [str(binaries["initdb"]), "-D", str(data_dir), "--username", "postgres", "--auth", "trust", "--nosync"],
        "initdb",
    )

    port = _free_port()
    pg_ctl = str(binaries["pg_ctl"])
    _run(
        [pg_ctl, "-D", str(data_dir), "-l", str(log_file), "-o", f"-p {port} -k {socket_dir}", "-w", "start"],
        "pg_ctl start",
        log_file,
    )

    try:
        yield f"postgresql+psycopg://postgres@127.0.0.1:{port}/postgres"
    finally:
        subprocess.run([pg_ctl, "-D", str(data_dir), "-m", "immediate", "stop"], capture_output=True, text=True)
        shutil.rmtree(data_dir, ignore_errors=True)
        shutil.rmtree(socket_dir, ignore_errors=True)
