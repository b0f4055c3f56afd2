"""
bundle_studio/samples.py
-----------------------------------------------------------------------------
Sample template loading.

Each folder below ``bundle_studio/samples/`` is an unzipped bundle: it uses
the same member names as an archive (``index.html``, ``header.html``,
``footer.html``, ``options.json``, ``example-model.json``, ``assets/``).
Missing members keep the blank-session defaults, exactly as a partial
archive would.

All path resolution is relative to this file, so the loaders work
regardless of the working directory from which uvicorn is launched.

Exports
-------
list_sample_names() -> list[str]
    Sorted names of all sample folders.

load_sample_session(name) -> Session
    Build a fresh session from a sample folder.
"""

from __future__ import annotations

from pathlib import Path

from fastapi import HTTPException

from bundle_studio.archive import ASSETS_FOLDER, KNOWN_FILES, decode_members
from bundle_studio.errors import CorruptArchiveError, MalformedModelError
from bundle_studio.schema import Session

_HERE = Path(__file__).parent
SAMPLES_DIR = _HERE / "samples"

DEFAULT_SAMPLE = "default"


def list_sample_names() -> list[str]:
    """Return a sorted list of sample folder names."""
    if not SAMPLES_DIR.is_dir():
        return []
    return sorted(p.name for p in SAMPLES_DIR.iterdir() if p.is_dir())


def _read_members(folder: Path) -> dict[str, bytes]:
    """Collect the bundle members present in ``folder``, keyed like zip entries."""
    members = {
        filename: (folder / filename).read_bytes()
        for filename in sorted(KNOWN_FILES)
        if (folder / filename).is_file()
    }
    assets_dir = folder / ASSETS_FOLDER
    if assets_dir.is_dir():
        for p in sorted(assets_dir.rglob("*")):
            if p.is_file():
                members[f"{ASSETS_FOLDER}/{p.relative_to(assets_dir).as_posix()}"] = p.read_bytes()
    return members


def load_sample_session(name: str = DEFAULT_SAMPLE) -> Session:
    """
    Build a new session from the sample folder ``name``.

    Members are decoded exactly as ``unpack_bundle`` decodes archive entries.

    Parameters
    ----------
    name : Sample folder name (e.g. ``"default"``).

    Returns
    -------
    Session : A fresh session; nothing is shared with other calls.

    Raises
    ------
    HTTPException(404)
        If the sample doesn't exist.
    HTTPException(500)
        If a sample member cannot be decoded (indicates a broken deployment).
    """
    folder = SAMPLES_DIR / name
    if "/" in name or "\\" in name or name.startswith(".") or not folder.is_dir():
        raise HTTPException(status_code=404, detail=f"Sample '{name}' not found.")

    try:
        updates = decode_members(_read_members(folder))
    except (CorruptArchiveError, MalformedModelError) as exc:
        raise HTTPException(
            status_code=500, detail=f"Sample '{name}' is invalid: {exc}"
        ) from exc

    return Session(**updates)
