"""Bounded blocking file I/O for the handoff core.

Blocking calls run in a worker thread under ``asyncio.wait_for``. A timeout
or ``OSError`` surfaces as ``PersistenceError``; nothing is retried.
"""
import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from campaignflow.specs.common.errors import PersistenceError

T = TypeVar("T")


async def run_io(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        raise PersistenceError(
            f"{operation} timed out after {timeout}s",
            details={"operation": operation, "timeoutSeconds": timeout},
        ) from exc
    except OSError as exc:
        raise PersistenceError(
            f"{operation} failed: {exc}",
            details={"operation": operation, "error": str(exc), "path": getattr(exc, "filename", None)},
        ) from exc


def read_json(path: Union[Path, str]) -> Dict[str, Any]:
    """Load a JSON object; malformed content is a ``PersistenceError``."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PersistenceError(
            f"{path.name} is not valid JSON",
            details={"path": str(path), "error": str(exc)},
        ) from exc
    if not isinstance(data, dict):
        raise PersistenceError(f"{path.name} does not hold a JSON object", details={"path": str(path)})
    return data


def temp_path_for(path: Union[Path, str]) -> Path:
    path = Path(path)
    return path.parent / f".{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}"


def write_temp(path: Union[Path, str], payload: Dict[str, Any], tmp_path: Optional[Path] = None) -> Path:
    """Write ``payload`` next to ``path`` and fsync it. Returns the temp path.

    The target itself is untouched until ``commit`` renames the temp file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = tmp_path or temp_path_for(path)
    content = json.dumps(payload, indent=2, ensure_ascii=False)
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        discard(tmp_path)
        raise
    return tmp_path


def commit(tmp_path: Union[Path, str], path: Union[Path, str]) -> None:
    path = Path(path)
    os.replace(str(tmp_path), str(path))
    _fsync_dir(path.parent)


def discard(tmp_path: Union[Path, str]) -> None:
    Path(tmp_path).unlink(missing_ok=True)


def atomic_write_json(path: Union[Path, str], payload: Dict[str, Any]) -> None:
    """Write-temp-then-rename in one call."""
    tmp_path = write_temp(path, payload)
    try:
        commit(tmp_path, path)
    except BaseException:
        discard(tmp_path)
        raise


def _fsync_dir(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
