"""Per-install-directory exclusive sections."""

import threading
from pathlib import Path

_registry_lock = threading.Lock()
_section_locks: dict[tuple[str, str], threading.Lock] = {}


def exclusive_section(name: str, install_dir: Path) -> threading.Lock:
    """Lock for section ``name`` of the installation at ``install_dir``.

    Installer instances working on different directories never contend;
    two instances on the same directory serialize the named section.
    """
    key = (name, str(Path(install_dir).resolve()))
    with _registry_lock:
        lock = _section_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _section_locks[key] = lock
        return lock
