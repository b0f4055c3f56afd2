"""
bundle_studio/schema.py
-----------------------------------------------------------------------------
Pydantic v2 models for the editing session, the archive selection flags, the
remote bundle directory, and every request / response object of the HTTP API.

Design principles
-----------------
• ``Session`` is the single mutable object in the system.  Every field
  assignment is validated (``validate_assignment=True``) and announced to
  subscribed listeners, which is how the reconciler tracks "dirty" state
  without deep-watching the object graph.
• ``RenderOptions`` always has a value for every recognised key.  Unknown
  keys coming from an archive are kept (``extra="allow"``) so they survive a
  load / save cycle.
• Wire format (``options.json``, the HTTP API) uses camelCase keys; Python
  code uses snake_case.  ``populate_by_name=True`` accepts both.
"""

from __future__ import annotations

import copy
import json
from enum import Enum
from typing import Any, Callable

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
)
from pydantic.alias_generators import to_camel

from bundle_studio.errors import MalformedModelError

# -----------------------------------------------------------------------------
# Render options
# -----------------------------------------------------------------------------


class TemplateEngine(str, Enum):
    """Templating syntax used by the HTML bodies."""

    GOLANG = "golang"
    HANDLEBARS = "handlebars"
    DJANGO = "django"

    @classmethod
    def from_tag(cls, tag: str | TemplateEngine | None) -> TemplateEngine:
        """
        Resolve an engine tag as sent by the bundle server.

        Accepts the enum value (``"golang"``) or member name (``"Golang"``)
        case-insensitively.  An empty or missing tag means the default engine.

        Raises
        ------
        ValueError : If the tag names no known engine.
        """
        if isinstance(tag, cls):
            return tag
        if not tag:
            return cls.GOLANG
        wanted = str(tag).strip().lower()
        for member in cls:
            if wanted in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown template engine tag: '{tag}'")


class Margins(BaseModel):
    """Page margins in millimetres."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    top: float = 25
    right: float = 25
    bottom: float = 20
    left: float = 25


class PageSize(BaseModel):
    """Explicit page size in millimetres (used when no named format applies)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    width: float = 210
    height: float = 297


class RenderOptions(BaseModel):
    """
    Render options handed to the PDF renderer alongside the templates.

    Every recognised key has a default, so a loaded session never has a
    missing option.  Only explicitly set keys are written to
    ``options.json`` (see ``to_wire``).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    page_format: str = Field(
        default="A4",
        description="Named paper format (A4, A5, Letter, ...).",
    )
    landscape: bool = Field(default=False, description="Rotate the page to landscape.")
    exclude_builtin_styles: bool = Field(
        default=False,
        description="Skip the renderer's built-in base stylesheet.",
    )
    margins: Margins = Field(default_factory=Margins)
    page_size: PageSize = Field(default_factory=PageSize)

    def to_wire(self) -> dict[str, Any]:
        """
        Serialise the explicitly set keys with camelCase names.

        A record with no explicitly set key is written in full, so the
        renderer never falls back to its own defaults.
        """
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_unset=bool(self.model_fields_set),
        )


def base_options() -> RenderOptions:
    """Return a fresh baseline options record with every default filled in."""
    return RenderOptions()


def normalise_options(overrides: dict[str, Any]) -> dict[str, Any]:
    """
    Validate ``overrides`` and return them keyed by their camelCase names.

    Snake_case and camelCase spellings both map to the alias, so a later
    ``{**current, **overrides}`` merge can never keep a stale value under
    the other spelling.

    Raises
    ------
    pydantic.ValidationError : If an override has the wrong type.
    """
    validated = RenderOptions.model_validate(overrides)
    normalised = validated.model_dump(by_alias=True, exclude_unset=True)
    normalised.update(validated.model_extra or {})
    return normalised


def merge_options(overrides: dict[str, Any]) -> RenderOptions:
    """
    Overlay ``overrides`` on the baseline defaults, key by key.

    The result has every recognised key marked as set, so a subsequent
    ``to_wire`` writes the full record.

    Raises
    ------
    pydantic.ValidationError : If an override has the wrong type.
    """
    merged = base_options().model_dump(by_alias=True)
    merged.update(normalise_options(overrides))
    return RenderOptions.model_validate(merged)


# -----------------------------------------------------------------------------
# Assets
# -----------------------------------------------------------------------------


class Asset(BaseModel):
    """A named binary blob (image, font, stylesheet) shipped with a template."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(
        ...,
        description="Unique asset name; also the path below the archive's assets folder.",
        examples=["logo.png", "fonts/inter.woff2"],
    )
    data: bytes = Field(..., description="Raw asset bytes.")

    @field_validator("name")
    @classmethod
    def name_is_safe_path(cls, v: str) -> str:
        """Reject empty names and anything that could escape the assets folder."""
        if not v or not v.strip():
            raise ValueError("asset name must not be empty")
        if v.startswith("/") or "\\" in v:
            raise ValueError(f"asset name '{v}' must be a relative forward-slash path")
        if any(part in ("", ".", "..") for part in v.split("/")):
            raise ValueError(f"asset name '{v}' contains empty, current or parent segments")
        return v


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------

SessionListener = Callable[[str], None]


class Session(BaseModel):
    """
    The full editable state of one PDF template.

    Fields
    ------
    body              – primary HTML template (``index.html``).
    header / footer   – optional HTML templates.
    options           – render options, always complete.
    example_model_str – example data as JSON text; the authoritative form.
                        ``example_model`` is derived from it on every read.
    assets            – ordered, uniquely named binary blobs.
    template_engine   – templating syntax of the HTML bodies.

    Listeners registered with ``subscribe`` receive the field name on every
    assignment (``"*"`` for a whole-session ``apply``).  Mutating a nested
    object in place is not observed.
    """

    model_config = ConfigDict(validate_assignment=True)

    body: str = ""
    header: str | None = None
    footer: str | None = None
    options: RenderOptions = Field(default_factory=base_options)
    example_model_str: str = "{}"
    assets: list[Asset] = Field(default_factory=list)
    template_engine: TemplateEngine = TemplateEngine.GOLANG

    _listeners: list[SessionListener] = PrivateAttr(default_factory=list)

    @field_validator("example_model_str")
    @classmethod
    def model_str_is_json(cls, v: str) -> str:
        try:
            json.loads(v)
        except json.JSONDecodeError as exc:
            raise ValueError(f"example model is not valid JSON: {exc}") from exc
        return v

    @field_validator("assets")
    @classmethod
    def asset_names_unique(cls, v: list[Asset]) -> list[Asset]:
        seen: set[str] = set()
        for asset in v:
            if asset.name in seen:
                raise ValueError(f"duplicate asset name '{asset.name}'")
            seen.add(asset.name)
        return v

    # -- change notification ------------------------------------------------ #

    def __setattr__(self, name: str, value: Any) -> None:
        super().__setattr__(name, value)
        if name in type(self).model_fields:
            self._notify(name)

    def subscribe(self, listener: SessionListener) -> None:
        """Register ``listener`` to be called with the field name on every change."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, name: str) -> None:
        for listener in list(self._listeners):
            listener(name)

    # -- example model ------------------------------------------------------ #

    @property
    def example_model(self) -> Any:
        """The parsed example data (re-parsed from ``example_model_str``)."""
        return json.loads(self.example_model_str)

    def set_example_model_str(self, text: str) -> None:
        """
        Replace the example model text.

        The text is parsed before anything is assigned, so invalid JSON leaves
        the prior model untouched.

        Raises
        ------
        MalformedModelError : If ``text`` is not valid JSON.
        """
        try:
            json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedModelError(f"Example model is not valid JSON: {exc}") from exc
        self.example_model_str = text

    # -- assets ------------------------------------------------------------- #

    def add_asset(self, asset: Asset) -> None:
        """Add ``asset``, replacing an existing asset of the same name in place."""
        assets = list(self.assets)
        for i, existing in enumerate(assets):
            if existing.name == asset.name:
                assets[i] = asset
                break
        else:
            assets.append(asset)
        self.assets = assets

    def remove_asset(self, name: str) -> bool:
        """Remove the asset called ``name``.  Returns False if there was none."""
        remaining = [a for a in self.assets if a.name != name]
        if len(remaining) == len(self.assets):
            return False
        self.assets = remaining
        return True

    # -- whole-session operations ------------------------------------------- #

    def snapshot(self) -> Session:
        """Return a detached deep copy (no listeners, same set-field markers)."""
        values = {name: copy.deepcopy(getattr(self, name)) for name in type(self).model_fields}
        return type(self).model_construct(_fields_set=set(self.model_fields_set), **values)

    def apply(self, other: Session) -> None:
        """Copy every field of ``other`` into this session with a single notification."""
        for name in type(self).model_fields:
            BaseModel.__setattr__(self, name, copy.deepcopy(getattr(other, name)))
        self._notify("*")


# -----------------------------------------------------------------------------
# Archive selection
# -----------------------------------------------------------------------------


class FileSelection(BaseModel):
    """Which member kinds ``pack_bundle`` writes.  Unset flags are excluded."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    index: bool = False
    header: bool = False
    footer: bool = False
    options: bool = False
    example_model: bool = False
    assets: bool = False


ALL_FILES = FileSelection(
    index=True,
    header=True,
    footer=True,
    options=True,
    example_model=True,
    assets=True,
)


class DownloadPreset(str, Enum):
    """Named partial downloads offered by the editor's download menu."""

    DOCUMENT_WITHOUT_HEADER_AND_FOOTER = "documentWithoutHeaderAndFooter"
    ONLY_BODY = "onlyBody"
    ONLY_HEADER = "onlyHeader"
    ONLY_FOOTER = "onlyFooter"
    ONLY_OPTIONS = "onlyOptions"
    ONLY_ASSETS = "onlyAssets"


# -----------------------------------------------------------------------------
# Remote bundle directory
# -----------------------------------------------------------------------------


class BundleInfo(BaseModel):
    """Reference to a remotely stored bundle."""

    id: str = Field(..., description="Server-assigned bundle id.")
    name: str = Field(..., description="Human-readable bundle name.")


class FetchedBundle(BaseModel):
    """Result of fetching one bundle from the remote directory."""

    archive: bytes
    name: str
    template_engine: TemplateEngine

    @field_validator("template_engine", mode="before")
    @classmethod
    def resolve_engine_tag(cls, v: Any) -> TemplateEngine:
        return TemplateEngine.from_tag(v)


# -----------------------------------------------------------------------------
# Reconciler state
# -----------------------------------------------------------------------------


class ReconcilerState(BaseModel):
    """Snapshot of the reconciler's linkage and error state."""

    current_bundle: BundleInfo | None = Field(
        default=None,
        description="The remote bundle this session is linked to, if any.",
    )
    dirty: bool = Field(
        default=False,
        description="True once the session changed since the last load or save.",
    )
    last_error: str | None = Field(
        default=None,
        description="Last human-readable failure message.",
    )
    busy: bool = Field(
        default=False,
        description="True while a load / save / import is in flight.",
    )


class ResumePointer(BaseModel):
    """A key / value pair the host should write to local storage."""

    key: str
    value: str


class BeforeExitDecision(BaseModel):
    """What the host should do when the process or page is about to exit."""

    should_warn: bool = Field(..., description="True when there are unsaved changes.")
    message: str | None = Field(
        default=None,
        description="Fixed unsaved-changes warning; None when should_warn is False.",
    )
    persist: ResumePointer | None = Field(
        default=None,
        description="Resume pointer to persist; None when the session is unlinked.",
    )


class ResumeStatus(str, Enum):
    NONE = "none"
    RESUMED = "resumed"
    FAILED = "failed"


class ResumeResult(BaseModel):
    """Outcome of ``SessionReconciler.initialize``."""

    status: ResumeStatus
    bundle: BundleInfo | None = None
    error: str | None = None


# -----------------------------------------------------------------------------
# HTTP API request / response
# -----------------------------------------------------------------------------


class AssetInfo(BaseModel):
    name: str
    size_bytes: int


class SessionView(BaseModel):
    """
    Read-only projection of the session for the editor.

    Asset bytes are not included; the editor only needs names and sizes.
    """

    body: str
    header: str | None
    footer: str | None
    options: dict[str, Any] = Field(
        ...,
        description="Full render options with camelCase keys.",
    )
    example_model_str: str
    assets: list[AssetInfo]
    template_engine: TemplateEngine

    @classmethod
    def from_session(cls, session: Session) -> SessionView:
        return cls(
            body=session.body,
            header=session.header,
            footer=session.footer,
            options=session.options.model_dump(mode="json", by_alias=True),
            example_model_str=session.example_model_str,
            assets=[AssetInfo(name=a.name, size_bytes=len(a.data)) for a in session.assets],
            template_engine=session.template_engine,
        )


class SessionPatch(BaseModel):
    """
    Partial edit of the session sent by the editor.

    Only fields present in the request body are applied.  ``options`` keys
    are merged over the session's current options.
    """

    body: str | None = None
    header: str | None = None
    footer: str | None = None
    options: dict[str, Any] | None = None
    example_model_str: str | None = None
    template_engine: TemplateEngine | None = None


class SaveBundleRequest(BaseModel):
    """Request body for ``POST /api/bundles/save``."""

    name: str = Field(
        ...,
        min_length=1,
        description="Bundle name to store under.",
        examples=["Invoice v2"],
    )


class SaveBundleResponse(BaseModel):
    id: str = Field(..., description="Id assigned (or kept) by the bundle server.")
    name: str
