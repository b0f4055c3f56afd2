"""
bundle_studio/reconciler.py
-----------------------------------------------------------------------------
Session reconciler: keeps the one live editing session in step with the
remote bundle directory and with the local resume pointer.

State
-----
current_bundle – the remote bundle the session is linked to, or None.
dirty          – True once the session changed since the last load / save.
last_error     – last human-readable failure, or None.
pending_file   – bytes of a local archive while it is being imported.

Linkage
-------
    [unlinked] --save_current ok (no id)--> [linked]
    [linked]   --save_current ok (id)-----> [linked]   (update / rename)
    [linked]   --fetch_and_load ok--------> [linked]   (switch target)
    [linked]   --import_local_file--------> [unlinked]
    [linked]   --new_session--------------> [unlinked]
    any        --save_current failed------> unchanged, last_error set

Error policy
------------
Load, save, import and list never raise: codec and transport failures are
turned into ``last_error`` and a failure return value (``False``, ``""`` or
``[]``) and logged as warnings.  A failed load or import leaves the session
exactly as it was, because archives are decoded into a detached snapshot
that is only applied on success.

Concurrency
-----------
One operation at a time.  A second caller arriving while a load / save /
import / edit is in flight fails fast instead of queueing, so the session
is never written from two places at once.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from bundle_studio.archive import pack_bundle, selection_for_preset, unpack_bundle
from bundle_studio.bundle_client import BundleDirectory
from bundle_studio.errors import BundleError, ReconcilerBusyError, TransportFailureError
from bundle_studio.resume_store import RESUME_KEY, ResumeStore
from bundle_studio.schema import (
    BeforeExitDecision,
    BundleInfo,
    DownloadPreset,
    FileSelection,
    ReconcilerState,
    RenderOptions,
    ResumePointer,
    ResumeResult,
    ResumeStatus,
    Session,
    SessionPatch,
    normalise_options,
)

logger = logging.getLogger(__name__)

UNSAVED_WARNING = "There are unsaved changes, are you sure you want to leave?"
BUSY_MESSAGE = "Another bundle operation is already in progress."


class SessionReconciler:
    """
    Load / save / import / export orchestration for one bound session.

    Parameters
    ----------
    session       : The live session.  The reconciler subscribes to its
                    change notifications for dirty tracking.
    directory     : Remote bundle directory (list / fetch / store).
    store         : Local key / value store for the resume pointer.
    blank_factory : Builds the content for ``new_session``.
    """

    def __init__(
        self,
        session: Session,
        directory: BundleDirectory,
        store: ResumeStore,
        *,
        blank_factory: Callable[[], Session] = Session,
    ) -> None:
        self.session = session
        self.directory = directory
        self.store = store
        self.blank_factory = blank_factory

        self.current_bundle: BundleInfo | None = None
        self.dirty = False
        self.last_error: str | None = None
        self.pending_file: bytes | None = None

        self._lock = threading.Lock()
        session.subscribe(self._on_session_change)

    # -- state ---------------------------------------------------------------- #

    def _on_session_change(self, field: str) -> None:
        self.dirty = True

    @property
    def state(self) -> ReconcilerState:
        return ReconcilerState(
            current_bundle=self.current_bundle,
            dirty=self.dirty,
            last_error=self.last_error,
            busy=self._lock.locked(),
        )

    def mark_dirty(self) -> None:
        """Flag an in-place edit the session could not observe itself."""
        self.dirty = True

    def clear_error(self) -> None:
        self.last_error = None

    @contextmanager
    def _exclusive(self) -> Iterator[bool]:
        if not self._lock.acquire(blocking=False):
            self.last_error = BUSY_MESSAGE
            yield False
            return
        try:
            yield True
        finally:
            self._lock.release()

    @contextmanager
    def editing(self) -> Iterator[Session]:
        """
        Hold the operation lock while the caller mutates the session.

        Raises
        ------
        ReconcilerBusyError : If a load / save / import is in flight.
        """
        if not self._lock.acquire(blocking=False):
            raise ReconcilerBusyError(BUSY_MESSAGE)
        try:
            yield self.session
        finally:
            self._lock.release()

    def _clear_resume_pointer(self) -> None:
        try:
            self.store.remove(RESUME_KEY)
        except OSError as exc:
            logger.warning("Failed to clear resume pointer: %s", exc)

    # -- startup / shutdown --------------------------------------------------- #

    def initialize(self) -> ResumeResult:
        """
        Resume the last linked bundle, if local storage names one.

        Called once by the host at startup.  A failed resume only fills
        ``last_error``; the session keeps its initial content.
        """
        bundle_id = self.store.get(RESUME_KEY)
        if not bundle_id:
            return ResumeResult(status=ResumeStatus.NONE)

        if self.fetch_and_load(bundle_id):
            logger.info("Resumed bundle %s", bundle_id)
            return ResumeResult(status=ResumeStatus.RESUMED, bundle=self.current_bundle)

        logger.warning("Could not resume bundle %s: %s", bundle_id, self.last_error)
        return ResumeResult(status=ResumeStatus.FAILED, error=self.last_error)

    def on_before_exit(self) -> BeforeExitDecision:
        """
        Decide what the host should do before exiting.  Has no side effects.

        ``persist`` carries the resume pointer when the session is linked;
        ``should_warn`` is set when there are unsaved changes.
        """
        persist = None
        if self.current_bundle is not None and self.current_bundle.id:
            persist = ResumePointer(key=RESUME_KEY, value=self.current_bundle.id)
        return BeforeExitDecision(
            should_warn=self.dirty,
            message=UNSAVED_WARNING if self.dirty else None,
            persist=persist,
        )

    # -- remote --------------------------------------------------------------- #

    def list_remote_bundles(self) -> list[BundleInfo]:
        """Return the remote directory listing, or ``[]`` on failure."""
        try:
            return self.directory.list_bundles()
        except TransportFailureError as exc:
            self.last_error = f"Error loading bundles info: {exc}"
            logger.warning("Failed to list bundles: %s", exc)
            return []

    def fetch_and_load(self, bundle_id: str) -> bool:
        """
        Fetch bundle ``bundle_id`` and load it into the session.

        On success the session is linked to the bundle, takes its template
        engine, and is clean.  On failure the session is untouched.
        """
        with self._exclusive() as acquired:
            if not acquired:
                return False
            try:
                fetched = self.directory.fetch_bundle(bundle_id)
                loaded = unpack_bundle(fetched.archive, self.session.snapshot())
                loaded.template_engine = fetched.template_engine
            except BundleError as exc:
                self.last_error = f"Error loading bundle: {exc}"
                logger.warning("Failed to load bundle %s: %s", bundle_id, exc)
                return False

            self.session.apply(loaded)
            self.current_bundle = BundleInfo(id=bundle_id, name=fetched.name)
            self.dirty = False
            logger.info("Loaded bundle %s (%s)", bundle_id, fetched.name)
            return True

    def save_current(self, name: str) -> str:
        """
        Pack the whole session and store it remotely under ``name``.

        Updates the linked bundle when there is one, otherwise creates a new
        bundle.  Returns the stored id, or ``""`` on failure (``dirty`` is
        left as it was).
        """
        with self._exclusive() as acquired:
            if not acquired:
                return ""
            bundle_id = self.current_bundle.id if self.current_bundle else ""
            try:
                archive = pack_bundle(self.session)
                new_id = self.directory.store_bundle(
                    archive=archive,
                    name=name,
                    bundle_id=bundle_id,
                    template_engine=self.session.template_engine,
                )
            except BundleError as exc:
                self.last_error = f"Error saving bundle: {exc}"
                logger.warning("Failed to save bundle '%s': %s", name, exc)
                return ""

            self.current_bundle = BundleInfo(id=new_id, name=name)
            self.dirty = False
            return new_id

    # -- local ---------------------------------------------------------------- #

    def import_local_file(self, data: bytes) -> bool:
        """
        Load a user-supplied archive into the session.

        A local file has no remote identity: the session is unlinked and the
        resume pointer cleared.  The imported content is the new clean
        baseline.
        """
        with self._exclusive() as acquired:
            if not acquired:
                return False
            self.pending_file = data
            try:
                loaded = unpack_bundle(data, self.session.snapshot())
            except BundleError as exc:
                self.last_error = f"Error importing bundle: {exc}"
                logger.warning("Failed to import bundle file: %s", exc)
                return False
            finally:
                self.pending_file = None

            self.session.apply(loaded)
            self.current_bundle = None
            self._clear_resume_pointer()
            self.dirty = False
            logger.info("Imported bundle file (%d bytes)", len(data))
            return True

    def export_local(self, selection: FileSelection | DownloadPreset | None = None) -> bytes:
        """
        Pack the session for a user download.  Reconciler state is unchanged.

        Parameters
        ----------
        selection : Member flags, a named download preset, or ``None`` for
                    the full bundle.

        Raises
        ------
        MalformedModelError : If the example model text is not valid JSON.
        ReconcilerBusyError : If a load / save / import is in flight.
        """
        if not isinstance(selection, FileSelection):
            selection = selection_for_preset(selection)
        with self.editing() as session:
            return pack_bundle(session, selection)

    # -- editing -------------------------------------------------------------- #

    def new_session(self, blank: Session | None = None) -> bool:
        """
        Replace the session content and unlink it.

        ``blank`` supplies the new content (e.g. a sample template); by
        default ``blank_factory`` is called.
        """
        with self._exclusive() as acquired:
            if not acquired:
                return False
            self.session.apply(blank if blank is not None else self.blank_factory())
            self.current_bundle = None
            self._clear_resume_pointer()
            self.dirty = False
            return True

    def apply_patch(self, patch: SessionPatch) -> None:
        """
        Apply an editor patch.  Only fields present in the patch are touched.

        Everything is validated before the first assignment, so a rejected
        patch changes nothing.

        Raises
        ------
        MalformedModelError      : If ``example_model_str`` is not valid JSON.
        pydantic.ValidationError : If ``options`` has the wrong shape.
        ReconcilerBusyError      : If a load / save / import is in flight.
        """
        fields = patch.model_fields_set
        with self.editing() as session:
            options = None
            if "options" in fields and patch.options is not None:
                current = session.options.model_dump(by_alias=True, exclude_unset=True)
                options = RenderOptions.model_validate({**current, **normalise_options(patch.options)})
            if "example_model_str" in fields and patch.example_model_str is not None:
                session.set_example_model_str(patch.example_model_str)
            for name in ("body", "header", "footer"):
                if name in fields:
                    value = getattr(patch, name)
                    setattr(session, name, "" if name == "body" and value is None else value)
            if options is not None:
                session.options = options
            if "template_engine" in fields and patch.template_engine is not None:
                session.template_engine = patch.template_engine
