from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Optional, Union

import portalocker


LockException = portalocker.exceptions.LockException


@contextmanager
def exclusive_lock(
    path: Union[Path, str],
    *,
    timeout: Optional[float] = None,
    fail_when_locked: bool = False,
) -> Iterator[IO]:
    """Hold an advisory exclusive lock on ``path`` for the block.

    With ``fail_when_locked`` the call does not wait and raises
    ``LockException`` immediately if another holder exists; otherwise it
    waits up to ``timeout`` seconds. The lock file is created if missing
    and is never removed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = portalocker.Lock(
        str(path),
        mode="a",
        timeout=timeout,
        fail_when_locked=fail_when_locked,
    )
    handle = lock.acquire()
    try:
        yield handle
    finally:
        lock.release()
