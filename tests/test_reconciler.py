"""
Tests for bundle_studio/reconciler.py – session / remote / local-storage sync.

The remote directory is the in-memory ``FakeBundleDirectory`` from
conftest.py, so every transition can be checked without a bundle server.
"""

from __future__ import annotations

import io
import zipfile

import pytest
from pydantic import ValidationError

from bundle_studio.archive import pack_bundle, unpack_bundle
from bundle_studio.errors import MalformedModelError, ReconcilerBusyError, TransportFailureError
from bundle_studio.reconciler import BUSY_MESSAGE, UNSAVED_WARNING, SessionReconciler
from bundle_studio.resume_store import RESUME_KEY
from bundle_studio.schema import (
    Asset,
    BundleInfo,
    DownloadPreset,
    FetchedBundle,
    FileSelection,
    ResumeStatus,
    Session,
    SessionPatch,
    TemplateEngine,
)


def _names(archive: bytes) -> list[str]:
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        return sorted(zf.namelist())


# ── dirty tracking ───────────────────────────────────────────────────────────


class TestDirtyTracking:
    def test_starts_clean(self, reconciler: SessionReconciler) -> None:
        state = reconciler.state
        assert state.dirty is False
        assert state.current_bundle is None
        assert state.last_error is None
        assert state.busy is False

    def test_field_assignment_marks_dirty(self, reconciler, session) -> None:
        session.body = "<p>edited</p>"
        assert reconciler.dirty is True

    def test_asset_change_marks_dirty(self, reconciler, session) -> None:
        session.add_asset(Asset(name="a.png", data=b"1"))
        assert reconciler.dirty is True

    def test_mark_dirty_for_in_place_edits(self, reconciler, session) -> None:
        session.options.landscape = True
        assert reconciler.dirty is False
        reconciler.mark_dirty()
        assert reconciler.dirty is True

    def test_save_clears_dirty(self, reconciler, session) -> None:
        session.body = "<p>edited</p>"
        assert reconciler.save_current("Doc") == "bundle-1"
        assert reconciler.dirty is False

    def test_failed_save_stays_dirty(self, reconciler, session, directory) -> None:
        session.body = "<p>edited</p>"
        directory.fail_with = TransportFailureError("503 Service Unavailable", status_code=503)

        assert reconciler.save_current("Doc") == ""
        assert reconciler.dirty is True
        assert reconciler.current_bundle is None
        assert reconciler.last_error == "Error saving bundle: 503 Service Unavailable"

    def test_clear_error(self, reconciler, directory) -> None:
        directory.fail_with = TransportFailureError("down")
        reconciler.list_remote_bundles()
        assert reconciler.last_error is not None
        reconciler.clear_error()
        assert reconciler.last_error is None


# ── save_current ─────────────────────────────────────────────────────────────


class TestSaveCurrent:
    def test_first_save_creates_and_links(self, reconciler, directory) -> None:
        new_id = reconciler.save_current("Invoice")

        assert new_id == "bundle-1"
        assert reconciler.current_bundle == BundleInfo(id="bundle-1", name="Invoice")
        assert directory.store_calls[0]["bundle_id"] == ""

    def test_resave_passes_linked_id_and_renames(self, reconciler, directory) -> None:
        reconciler.save_current("Invoice")
        reconciler.save_current("Invoice v2")

        assert directory.store_calls[1]["bundle_id"] == "bundle-1"
        assert reconciler.current_bundle == BundleInfo(id="bundle-1", name="Invoice v2")
        assert len(directory.bundles) == 1

    def test_stores_full_archive_and_engine(self, reconciler, session, directory) -> None:
        session.template_engine = TemplateEngine.DJANGO
        reconciler.save_current("Doc")

        call = directory.store_calls[0]
        assert call["template_engine"] is TemplateEngine.DJANGO
        restored = unpack_bundle(call["archive"])
        assert restored.body == "<p>start</p>"
        assert restored.example_model == {"n": 1}


# ── fetch_and_load ───────────────────────────────────────────────────────────


class TestFetchAndLoad:
    def test_loads_links_and_cleans(self, reconciler, session, directory, full_session) -> None:
        directory.put("b-1", full_session, "Report", TemplateEngine.HANDLEBARS)
        session.body = "<p>unsaved</p>"

        assert reconciler.fetch_and_load("b-1") is True

        assert session.body == full_session.body
        assert session.header == full_session.header
        assert session.assets == full_session.assets
        assert session.example_model == full_session.example_model
        assert session.template_engine is TemplateEngine.HANDLEBARS
        assert reconciler.current_bundle == BundleInfo(id="b-1", name="Report")
        assert reconciler.dirty is False

    def test_switching_target(self, reconciler, directory, full_session) -> None:
        directory.put("b-1", full_session, "One")
        directory.put("b-2", Session(body="<p>two</p>"), "Two")

        reconciler.fetch_and_load("b-1")
        reconciler.fetch_and_load("b-2")

        assert reconciler.current_bundle == BundleInfo(id="b-2", name="Two")
        assert reconciler.session.body == "<p>two</p>"

    def test_absent_members_keep_prior_values(self, reconciler, session, directory) -> None:
        session.header = "<p>keep me</p>"
        directory.put("b-1", Session(body="<p>new</p>"), "Bodyless header")

        reconciler.fetch_and_load("b-1")

        assert session.body == "<p>new</p>"
        assert session.header == "<p>keep me</p>"

    def test_transport_failure_leaves_session_unchanged(self, reconciler, session, directory) -> None:
        before = session.model_dump()

        assert reconciler.fetch_and_load("missing") is False

        assert session.model_dump() == before
        assert reconciler.current_bundle is None
        assert reconciler.last_error == "Error loading bundle: 404 Not Found"

    def test_corrupt_archive_leaves_session_and_link_unchanged(
        self, reconciler, session, directory, full_session
    ) -> None:
        directory.put("b-1", full_session, "Good")
        reconciler.fetch_and_load("b-1")
        before = session.model_dump()
        directory.bundles["bad"] = FetchedBundle(
            archive=b"this is not a zip", name="Bad", template_engine="golang"
        )

        assert reconciler.fetch_and_load("bad") is False

        assert session.model_dump() == before
        assert reconciler.current_bundle == BundleInfo(id="b-1", name="Good")
        assert reconciler.last_error.startswith("Error loading bundle:")

    def test_malformed_model_in_archive(self, reconciler, session, directory) -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("index.html", "<p>new body</p>")
            zf.writestr("example-model.json", "{oops")
        directory.bundles["b-1"] = FetchedBundle(
            archive=buffer.getvalue(), name="Broken", template_engine=""
        )

        assert reconciler.fetch_and_load("b-1") is False

        assert session.body == "<p>start</p>"
        assert session.example_model_str == '{"n": 1}'


# ── list_remote_bundles ──────────────────────────────────────────────────────


class TestListRemoteBundles:
    def test_lists(self, reconciler, directory) -> None:
        directory.put("b-1", Session(), "One")
        assert reconciler.list_remote_bundles() == [BundleInfo(id="b-1", name="One")]

    def test_failure_returns_empty_and_sets_error(self, reconciler, directory) -> None:
        directory.fail_with = TransportFailureError("ConnectError: refused")

        assert reconciler.list_remote_bundles() == []
        assert reconciler.last_error == "Error loading bundles info: ConnectError: refused"


# ── local import / export ────────────────────────────────────────────────────


class TestImportLocalFile:
    def test_import_unlinks_and_clears_pointer(self, reconciler, session, store, full_session) -> None:
        reconciler.save_current("Linked")
        store.set(RESUME_KEY, "bundle-1")
        session.body = "<p>unsaved</p>"

        assert reconciler.import_local_file(pack_bundle(full_session)) is True

        assert session.body == full_session.body
        assert session.assets == full_session.assets
        assert reconciler.current_bundle is None
        assert reconciler.dirty is False
        assert reconciler.pending_file is None
        assert store.get(RESUME_KEY) is None

    def test_import_keeps_template_engine(self, reconciler, session, full_session) -> None:
        session.template_engine = TemplateEngine.DJANGO
        reconciler.import_local_file(pack_bundle(full_session))
        assert session.template_engine is TemplateEngine.DJANGO

    def test_corrupt_file_changes_nothing(self, reconciler, session, store) -> None:
        reconciler.save_current("Linked")
        store.set(RESUME_KEY, "bundle-1")
        before = session.model_dump()

        assert reconciler.import_local_file(b"\x00\x01 not a zip") is False

        assert session.model_dump() == before
        assert reconciler.current_bundle == BundleInfo(id="bundle-1", name="Linked")
        assert store.get(RESUME_KEY) == "bundle-1"
        assert reconciler.pending_file is None
        assert reconciler.last_error.startswith("Error importing bundle:")


class TestExportLocal:
    def test_full_export(self, reconciler, session) -> None:
        session.header = "<p>h</p>"
        archive = reconciler.export_local()
        assert _names(archive) == ["example-model.json", "header.html", "index.html", "options.json"]

    def test_preset(self, reconciler) -> None:
        assert _names(reconciler.export_local(DownloadPreset.ONLY_OPTIONS)) == ["options.json"]

    def test_explicit_selection(self, reconciler) -> None:
        assert _names(reconciler.export_local(FileSelection(index=True))) == ["index.html"]

    def test_export_does_not_change_state(self, reconciler, session) -> None:
        session.body = "<p>edited</p>"
        reconciler.export_local()
        assert reconciler.dirty is True
        assert reconciler.current_bundle is None
        assert reconciler.last_error is None

    def test_malformed_model_raises(self, directory, store) -> None:
        broken = Session.model_construct(example_model_str="{oops")
        reconciler = SessionReconciler(broken, directory, store)

        with pytest.raises(MalformedModelError):
            reconciler.export_local()

        assert reconciler.last_error is None


# ── startup / shutdown ───────────────────────────────────────────────────────


class TestInitialize:
    def test_no_pointer(self, reconciler) -> None:
        result = reconciler.initialize()
        assert result.status is ResumeStatus.NONE
        assert reconciler.current_bundle is None

    def test_resumes_linked_bundle(self, reconciler, session, directory, store, full_session) -> None:
        directory.put("b-1", full_session, "Report")
        store.set(RESUME_KEY, "b-1")

        result = reconciler.initialize()

        assert result.status is ResumeStatus.RESUMED
        assert result.bundle == BundleInfo(id="b-1", name="Report")
        assert session.body == full_session.body
        assert reconciler.dirty is False

    def test_failed_resume_keeps_session_and_pointer(self, reconciler, session, store) -> None:
        store.set(RESUME_KEY, "gone")

        result = reconciler.initialize()

        assert result.status is ResumeStatus.FAILED
        assert result.error == "Error loading bundle: 404 Not Found"
        assert session.body == "<p>start</p>"
        assert reconciler.current_bundle is None
        assert store.get(RESUME_KEY) == "gone"


class TestOnBeforeExit:
    def test_clean_and_unlinked(self, reconciler) -> None:
        decision = reconciler.on_before_exit()
        assert decision.should_warn is False
        assert decision.message is None
        assert decision.persist is None

    def test_dirty_and_linked(self, reconciler, session) -> None:
        reconciler.save_current("Doc")
        session.body = "<p>more</p>"

        decision = reconciler.on_before_exit()

        assert decision.should_warn is True
        assert decision.message == UNSAVED_WARNING
        assert decision.persist is not None
        assert (decision.persist.key, decision.persist.value) == (RESUME_KEY, "bundle-1")

    def test_has_no_side_effects(self, reconciler, session, store) -> None:
        reconciler.save_current("Doc")
        session.body = "<p>more</p>"

        first = reconciler.on_before_exit()
        second = reconciler.on_before_exit()

        assert first == second
        assert store.get(RESUME_KEY) is None
        assert reconciler.dirty is True


# ── concurrency guard ────────────────────────────────────────────────────────


class TestBusyGuard:
    def test_operations_fail_fast_while_busy(self, reconciler, session, directory, full_session) -> None:
        directory.put("b-1", full_session, "Report")

        with reconciler.editing():
            assert reconciler.state.busy is True
            assert reconciler.fetch_and_load("b-1") is False
            assert reconciler.last_error == BUSY_MESSAGE
            assert reconciler.save_current("Doc") == ""
            assert reconciler.import_local_file(pack_bundle(full_session)) is False
            assert reconciler.new_session() is False

        assert directory.fetch_calls == []
        assert directory.store_calls == []
        assert session.body == "<p>start</p>"
        assert reconciler.state.busy is False

    def test_edits_raise_while_busy(self, reconciler) -> None:
        with reconciler.editing():
            with pytest.raises(ReconcilerBusyError):
                reconciler.apply_patch(SessionPatch(body="x"))
            with pytest.raises(ReconcilerBusyError):
                reconciler.export_local()

    def test_lock_released_after_failure(self, reconciler, directory) -> None:
        directory.fail_with = TransportFailureError("down")
        reconciler.save_current("Doc")
        directory.fail_with = None

        assert reconciler.save_current("Doc") == "bundle-1"


# ── new_session / apply_patch ────────────────────────────────────────────────


class TestNewSession:
    def test_blank_default(self, reconciler, session, store) -> None:
        reconciler.save_current("Doc")
        store.set(RESUME_KEY, "bundle-1")
        session.add_asset(Asset(name="a.png", data=b"1"))

        assert reconciler.new_session() is True

        assert session.body == ""
        assert session.assets == []
        assert reconciler.current_bundle is None
        assert reconciler.dirty is False
        assert store.get(RESUME_KEY) is None

    def test_with_content(self, reconciler, session, full_session) -> None:
        reconciler.new_session(full_session)
        assert session.body == full_session.body
        assert session.template_engine is TemplateEngine.HANDLEBARS

    def test_blank_factory(self, session, directory, store) -> None:
        reconciler = SessionReconciler(
            session, directory, store, blank_factory=lambda: Session(body="<p>tpl</p>")
        )
        reconciler.new_session()
        assert session.body == "<p>tpl</p>"


class TestApplyPatch:
    def test_only_present_fields_change(self, reconciler, session) -> None:
        session.header = "<p>h</p>"

        reconciler.apply_patch(SessionPatch(body="<p>new</p>"))

        assert session.body == "<p>new</p>"
        assert session.header == "<p>h</p>"
        assert reconciler.dirty is True

    def test_explicit_null_clears_header(self, reconciler, session) -> None:
        session.header = "<p>h</p>"
        reconciler.apply_patch(SessionPatch.model_validate({"header": None}))
        assert session.header is None

    def test_options_merge_over_current(self, reconciler, session) -> None:
        reconciler.apply_patch(SessionPatch(options={"pageFormat": "A5"}))
        reconciler.apply_patch(SessionPatch(options={"landscape": True}))

        assert session.options.to_wire() == {"pageFormat": "A5", "landscape": True}

    def test_snake_case_edit_overrides_earlier_camel_case_value(self, reconciler, session) -> None:
        reconciler.apply_patch(SessionPatch(options={"pageFormat": "A3"}))
        reconciler.apply_patch(SessionPatch(options={"page_format": "A5"}))

        assert session.options.page_format == "A5"
        assert session.options.to_wire() == {"pageFormat": "A5"}

    def test_model_and_engine(self, reconciler, session) -> None:
        reconciler.apply_patch(
            SessionPatch(example_model_str='{"x": 2}', template_engine=TemplateEngine.DJANGO)
        )
        assert session.example_model == {"x": 2}
        assert session.template_engine is TemplateEngine.DJANGO

    def test_malformed_model_changes_nothing(self, reconciler, session) -> None:
        with pytest.raises(MalformedModelError):
            reconciler.apply_patch(SessionPatch(body="<p>changed</p>", example_model_str="{oops"))

        assert session.body == "<p>start</p>"
        assert session.example_model_str == '{"n": 1}'
        assert reconciler.dirty is False

    def test_bad_options_change_nothing(self, reconciler, session) -> None:
        with pytest.raises(ValidationError):
            reconciler.apply_patch(SessionPatch(body="<p>changed</p>", options={"landscape": "sideways"}))

        assert session.body == "<p>start</p>"
