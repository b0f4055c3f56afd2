"""Shared fixtures for the Template Bundle Studio test suite."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from bundle_studio.archive import pack_bundle
from bundle_studio.errors import TransportFailureError
from bundle_studio.main import app
from bundle_studio.reconciler import SessionReconciler
from bundle_studio.resume_store import ResumeStore
from bundle_studio.schema import (
    Asset,
    BundleInfo,
    FetchedBundle,
    Margins,
    RenderOptions,
    Session,
    TemplateEngine,
)


class FakeBundleDirectory:
    """
    In-memory stand-in for the remote bundle server.

    Set ``fail_with`` to make every call raise that error.  ``store_calls``
    records the keyword arguments of each ``store_bundle`` call.
    """

    def __init__(self) -> None:
        self.bundles: dict[str, FetchedBundle] = {}
        self.fail_with: TransportFailureError | None = None
        self.store_calls: list[dict] = []
        self.fetch_calls: list[str] = []
        self._next_id = 1

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def put(
        self,
        bundle_id: str,
        session: Session,
        name: str,
        engine: TemplateEngine = TemplateEngine.GOLANG,
    ) -> None:
        """Store ``session`` directly, bypassing the reconciler."""
        self.bundles[bundle_id] = FetchedBundle(
            archive=pack_bundle(session), name=name, template_engine=engine
        )

    def list_bundles(self) -> list[BundleInfo]:
        self._check()
        return [BundleInfo(id=k, name=v.name) for k, v in self.bundles.items()]

    def fetch_bundle(self, bundle_id: str) -> FetchedBundle:
        self.fetch_calls.append(bundle_id)
        self._check()
        if bundle_id not in self.bundles:
            raise TransportFailureError("404 Not Found", status_code=404)
        return self.bundles[bundle_id]

    def store_bundle(
        self,
        *,
        archive: bytes,
        name: str,
        bundle_id: str,
        template_engine: TemplateEngine,
    ) -> str:
        self._check()
        self.store_calls.append(
            {
                "archive": archive,
                "name": name,
                "bundle_id": bundle_id,
                "template_engine": template_engine,
            }
        )
        if not bundle_id:
            bundle_id = f"bundle-{self._next_id}"
            self._next_id += 1
        self.bundles[bundle_id] = FetchedBundle(
            archive=archive, name=name, template_engine=template_engine
        )
        return bundle_id


@pytest.fixture()
def full_session() -> Session:
    """A session with every member kind populated."""
    return Session(
        body="<h1>{{ .title }}</h1>",
        header="<div class='header'>{{ .title }}</div>",
        footer="<div class='footer'>Page <span class='pageNumber'></span></div>",
        options=RenderOptions(
            page_format="A5",
            landscape=True,
            margins=Margins(top=10, right=12, bottom=14, left=16),
        ),
        example_model_str='{"title": "Quarterly report", "rows": [1, 2, 3]}',
        assets=[
            Asset(name="logo.png", data=b"\x89PNG\r\n\x1a\n\x00\x01\x02"),
            Asset(name="fonts/inter.woff2", data=b"wOF2\x00\xff\r\n"),
        ],
        template_engine=TemplateEngine.HANDLEBARS,
    )


@pytest.fixture()
def directory() -> FakeBundleDirectory:
    return FakeBundleDirectory()


@pytest.fixture()
def store(tmp_path: Path) -> ResumeStore:
    return ResumeStore(tmp_path / "state" / "local_storage.json")


@pytest.fixture()
def session() -> Session:
    """The live session bound to the ``reconciler`` fixture."""
    return Session(body="<p>start</p>", example_model_str='{"n": 1}')


@pytest.fixture()
def reconciler(
    session: Session,
    directory: FakeBundleDirectory,
    store: ResumeStore,
) -> SessionReconciler:
    return SessionReconciler(session, directory, store)


@pytest.fixture()
def client(reconciler: SessionReconciler) -> TestClient:
    """FastAPI test client with the fake-wired reconciler (lifespan not run)."""
    app.state.reconciler = reconciler
    return TestClient(app)
