from __future__ import annotations

import errno
import os
from pathlib import Path


def write_text_atomic(path: str | os.PathLike[str], text: str) -> None:
    """Replace ``path`` with ``text`` through a sibling ``.tmp`` file.

    Bind-mounted single files (containers) refuse ``rename`` with EBUSY; those
    are rewritten in place instead.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(target)
    except OSError as exc:
        if exc.errno != errno.EBUSY:
            raise
        target.write_text(text, encoding="utf-8")
        if tmp_path.exists():
            tmp_path.unlink()
