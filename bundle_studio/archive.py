"""
bundle_studio/archive.py
-----------------------------------------------------------------------------
Archive codec for template bundles.

A bundle is a zip archive holding up to five member kinds:

    index.html           ← Session.body          (whenever selected)
    header.html          ← Session.header        (selected and non-empty)
    footer.html          ← Session.footer        (selected and non-empty)
    options.json         ← Session.options       (whenever selected)
    example-model.json   ← Session.example_model (whenever selected)
    assets/<name>        ← one entry per Session.assets item

Archives are built and read fully in memory.  Nothing here touches the
filesystem or the network.

Sections
--------
1. **Selection presets**: map the editor's download menu to member flags.
2. **Pack**: session → zip bytes.
3. **Unpack**: zip bytes → session, merging into an existing target.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib

from pydantic import ValidationError

from bundle_studio.errors import CorruptArchiveError, MalformedModelError
from bundle_studio.schema import (
    ALL_FILES,
    Asset,
    DownloadPreset,
    FileSelection,
    Session,
    merge_options,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INDEX_FILE = "index.html"
HEADER_FILE = "header.html"
FOOTER_FILE = "footer.html"
OPTIONS_FILE = "options.json"
EXAMPLE_MODEL_FILE = "example-model.json"
ASSETS_FOLDER = "assets"

KNOWN_FILES = frozenset({INDEX_FILE, HEADER_FILE, FOOTER_FILE, OPTIONS_FILE, EXAMPLE_MODEL_FILE})

DOWNLOAD_FILENAME = "pdf-template-bundle.zip"

# Limits for archives coming from outside (uploads, remote fetches).  Asset
# folders can legitimately hold many fonts and images, so these are looser
# than a plain save package would need.
MAX_FILE_SIZE: int = 20_971_520  # 20 MB per entry, uncompressed
MAX_ENTRY_COUNT: int = 500
MAX_UPLOAD_SIZE: int = 52_428_800  # 50 MB per uploaded archive


# ---------------------------------------------------------------------------
# Section 1: Selection presets
# ---------------------------------------------------------------------------

_PRESETS: dict[DownloadPreset, FileSelection] = {
    DownloadPreset.DOCUMENT_WITHOUT_HEADER_AND_FOOTER: FileSelection(
        index=True, options=True, assets=True
    ),
    DownloadPreset.ONLY_BODY: FileSelection(index=True),
    DownloadPreset.ONLY_HEADER: FileSelection(header=True),
    DownloadPreset.ONLY_FOOTER: FileSelection(footer=True),
    DownloadPreset.ONLY_OPTIONS: FileSelection(options=True),
    DownloadPreset.ONLY_ASSETS: FileSelection(assets=True),
}


def selection_for_preset(preset: DownloadPreset | None) -> FileSelection:
    """Return the member flags for ``preset``; ``None`` selects everything."""
    if preset is None:
        return ALL_FILES
    return _PRESETS[preset]


# ---------------------------------------------------------------------------
# Section 2: Pack
# ---------------------------------------------------------------------------


def _compact_json(value: object) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def pack_bundle(session: Session, selection: FileSelection | None = None) -> bytes:
    """
    Serialise ``session`` into zip bytes.

    The example model is re-parsed from ``session.example_model_str`` rather
    than trusted, and written in compact form so formatting differences in
    the editor never reach the archive.

    Parameters
    ----------
    session   : The session to pack.  It is read in place, not copied.
    selection : Member kinds to include.  ``None`` means all of them.

    Returns
    -------
    bytes : Raw zip bytes.

    Raises
    ------
    MalformedModelError : If the example model text is not valid JSON.
    """
    selection = selection or ALL_FILES

    # Parse first so a malformed model fails before any bytes are produced.
    model_json: str | None = None
    if selection.example_model:
        try:
            model_json = _compact_json(json.loads(session.example_model_str))
        except json.JSONDecodeError as exc:
            raise MalformedModelError(f"Example model is not valid JSON: {exc}") from exc

    buffer = io.BytesIO()

    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        if selection.index:
            zf.writestr(INDEX_FILE, session.body or "")
        if selection.header and session.header:
            zf.writestr(HEADER_FILE, session.header)
        if selection.footer and session.footer:
            zf.writestr(FOOTER_FILE, session.footer)
        if selection.options:
            zf.writestr(OPTIONS_FILE, _compact_json(session.options.to_wire()))
        if model_json is not None:
            zf.writestr(EXAMPLE_MODEL_FILE, model_json)
        if selection.assets:
            for asset in session.assets:
                zf.writestr(f"{ASSETS_FOLDER}/{asset.name}", asset.data)

    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Section 3: Unpack
# ---------------------------------------------------------------------------


def _read_entries(data: bytes) -> dict[str, bytes]:
    """
    Open ``data`` as a zip and return every file entry's bytes by name.

    Directory entries are skipped.  Size and count limits are enforced
    before anything is decompressed.

    Raises
    ------
    CorruptArchiveError : If ``data`` is not a zip or breaks a limit.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data), mode="r")
    except (zipfile.BadZipFile, ValueError) as exc:
        raise CorruptArchiveError(f"Bundle is not a valid zip archive: {exc}") from exc

    with zf:
        entries = zf.infolist()
        if len(entries) > MAX_ENTRY_COUNT:
            raise CorruptArchiveError(
                f"Bundle contains {len(entries)} entries, exceeding the "
                f"maximum of {MAX_ENTRY_COUNT}."
            )

        extracted: dict[str, bytes] = {}
        for info in entries:
            if info.is_dir():
                continue
            if info.file_size > MAX_FILE_SIZE:
                raise CorruptArchiveError(
                    f"Bundle entry '{info.filename}' is {info.file_size:,} bytes, "
                    f"exceeding the {MAX_FILE_SIZE:,}-byte limit."
                )
            try:
                extracted[info.filename] = zf.read(info)
            except (zipfile.BadZipFile, zlib.error, OSError, RuntimeError) as exc:
                raise CorruptArchiveError(
                    f"Bundle entry '{info.filename}' cannot be read: {exc}"
                ) from exc

    return extracted


def _decode_text(name: str, raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptArchiveError(f"{name} is not valid UTF-8: {exc}") from exc


def decode_members(members: dict[str, bytes]) -> dict[str, object]:
    """
    Decode bundle members into ``Session`` field updates.

    ``members`` maps member names (``index.html``, ``assets/logo.png``, ...)
    to raw bytes, whether they come from a zip or an unzipped folder.  Only
    fields whose member is present appear in the result.

    Raises
    ------
    CorruptArchiveError : If a member cannot be decoded (bad UTF-8, invalid
                          options, bad asset path).
    MalformedModelError : If ``example-model.json`` is not valid JSON.
    """
    assets_prefix = ASSETS_FOLDER + "/"
    updates: dict[str, object] = {}

    for name, field in ((INDEX_FILE, "body"), (HEADER_FILE, "header"), (FOOTER_FILE, "footer")):
        if name in members:
            updates[field] = _decode_text(name, members[name])

    if OPTIONS_FILE in members:
        try:
            raw_options = json.loads(_decode_text(OPTIONS_FILE, members[OPTIONS_FILE]))
        except json.JSONDecodeError as exc:
            raise CorruptArchiveError(f"{OPTIONS_FILE} is not valid JSON: {exc}") from exc
        if not isinstance(raw_options, dict):
            raise CorruptArchiveError(f"{OPTIONS_FILE} must contain a JSON object.")
        try:
            updates["options"] = merge_options(raw_options)
        except ValidationError as exc:
            raise CorruptArchiveError(f"{OPTIONS_FILE} is invalid: {exc}") from exc

    if EXAMPLE_MODEL_FILE in members:
        try:
            model = json.loads(members[EXAMPLE_MODEL_FILE].decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedModelError(f"{EXAMPLE_MODEL_FILE} is not valid JSON: {exc}") from exc
        updates["example_model_str"] = json.dumps(model, indent=2, ensure_ascii=False)

    assets: list[Asset] = []
    for name, raw in members.items():
        if name.startswith(assets_prefix):
            try:
                assets.append(Asset(name=name[len(assets_prefix):], data=raw))
            except ValidationError as exc:
                raise CorruptArchiveError(f"Bundle entry '{name}' is not a valid asset path.") from exc
        elif name not in KNOWN_FILES:
            logger.warning("Skipping unknown bundle entry '%s'", name)
    if assets:
        updates["assets"] = assets

    return updates


def unpack_bundle(data: bytes, target: Session | None = None) -> Session:
    """
    Decode zip bytes into ``target`` and return it.

    Members present in the archive overwrite the matching field; absent
    members leave the field as it was, so a header-only archive only changes
    the header.  Options are merged over the baseline defaults, key by key.
    Any entry below ``assets/`` replaces the whole asset list.

    Every member is decoded and validated before the first assignment, so a
    failure leaves ``target`` exactly as it was.

    Parameters
    ----------
    data   : Raw zip bytes.
    target : Session to merge into.  ``None`` creates a blank session.

    Returns
    -------
    Session : ``target`` (or the new blank session), updated in place.

    Raises
    ------
    CorruptArchiveError : If the bytes are not a zip, or a member cannot be
                          decoded (bad UTF-8, invalid options, bad asset path).
    MalformedModelError : If ``example-model.json`` is not valid JSON.
    """
    updates = decode_members(_read_entries(data))

    if target is None:
        target = Session()
    for field, value in updates.items():
        setattr(target, field, value)

    return target
