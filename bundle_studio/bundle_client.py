"""
bundle_studio/bundle_client.py
-----------------------------------------------------------------------------
Thin synchronous wrapper around the remote HTML-bundle directory.

Why synchronous?
----------------
FastAPI runs plain ``def`` route handlers in a thread-pool executor, so a
blocking ``httpx.Client`` call never stalls the event loop.  The reconciler
allows one operation at a time anyway, so an async client would buy nothing.

Bundle server reference
-----------------------
GET  {host}/api/html-bundle
    → {"Items": [{"id": "...", "name": "..."}, ...]}

GET  {host}/api/html-bundle/{id}
    → multipart/form-data with parts
        bundle          the zip archive (file part)
        name            bundle name
        templateEngine  engine tag ("golang", "handlebars", "django")

POST {host}/api/html-bundle   (multipart/form-data)
        bundle, name, id ("" = create new), templateEngine
    → {"id": "..."}

Environment variables
---------------------
BUNDLE_SERVER_URL – Base URL of the bundle server (default:
                    http://localhost:8000).  Read once at import time.

Errors
------
Every transport problem (connection error, timeout, non-2xx status,
malformed body) is raised as ``TransportFailureError`` so callers deal with
a single exception type.
"""

from __future__ import annotations

import logging
import os
from email.parser import BytesParser
from email.policy import HTTP
from typing import Protocol

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

from bundle_studio.errors import TransportFailureError
from bundle_studio.schema import BundleInfo, FetchedBundle, TemplateEngine

# Load .env if present (no-op if the file doesn't exist)
load_dotenv()

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

# Strip any trailing slash so we can safely append paths.
BUNDLE_SERVER_URL: str = os.getenv("BUNDLE_SERVER_URL", "http://localhost:8000").rstrip("/")

# Listing is cheap; fetch / store move whole archives with assets.
_LIST_TIMEOUT = httpx.Timeout(connect=3.0, read=10.0, write=3.0, pool=3.0)
_TRANSFER_TIMEOUT = httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=5.0)


class BundleDirectory(Protocol):
    """The three operations the reconciler needs from a bundle store."""

    def list_bundles(self) -> list[BundleInfo]: ...

    def fetch_bundle(self, bundle_id: str) -> FetchedBundle: ...

    def store_bundle(
        self,
        *,
        archive: bytes,
        name: str,
        bundle_id: str,
        template_engine: TemplateEngine,
    ) -> str: ...


# -----------------------------------------------------------------------------
# Multipart response parsing
# -----------------------------------------------------------------------------


def _parse_form_data(content_type: str, body: bytes) -> dict[str, bytes]:
    """
    Split a ``multipart/form-data`` response body into ``{part name: bytes}``.

    httpx only builds multipart requests; responses are parsed with the
    stdlib MIME parser by prefixing the Content-Type header.
    """
    if not content_type.lower().startswith("multipart/"):
        raise TransportFailureError(
            f"Expected a multipart/form-data response, got '{content_type or 'none'}'."
        )
    message = BytesParser(policy=HTTP).parsebytes(
        b"Content-Type: " + content_type.encode("latin-1") + b"\r\n\r\n" + body
    )
    parts: dict[str, bytes] = {}
    for part in message.iter_parts():
        name = part.get_param("name", header="content-disposition")
        if name:
            parts[str(name)] = part.get_payload(decode=True) or b""
    return parts


# -----------------------------------------------------------------------------
# HTTP implementation
# -----------------------------------------------------------------------------


class HttpBundleDirectory:
    """
    ``BundleDirectory`` backed by the bundle server's HTTP API.

    Parameters
    ----------
    host : Base URL of the bundle server.  Defaults to ``BUNDLE_SERVER_URL``.
    """

    def __init__(self, host: str | None = None) -> None:
        self.host = (host or BUNDLE_SERVER_URL).rstrip("/")

    def _url(self, *parts: str) -> str:
        return "/".join([self.host, "api", "html-bundle", *parts])

    def list_bundles(self) -> list[BundleInfo]:
        """
        Return every bundle known to the server.

        Raises
        ------
        TransportFailureError : On network, HTTP, or response-shape errors.
        """
        try:
            with httpx.Client(timeout=_LIST_TIMEOUT) as client:
                response = client.get(self._url())
                response.raise_for_status()
            data = response.json()
            # The server wraps the list in {"Items": [...]}; accept a bare list too.
            items = data.get("Items", []) if isinstance(data, dict) else data
            return [BundleInfo.model_validate(item) for item in items or []]
        except httpx.HTTPStatusError as exc:
            raise TransportFailureError(
                f"{exc.response.status_code} {exc.response.reason_phrase}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            raise TransportFailureError(f"{type(exc).__name__}: {exc}") from exc

    def fetch_bundle(self, bundle_id: str) -> FetchedBundle:
        """
        Download one bundle: archive bytes, name, and engine tag.

        Raises
        ------
        TransportFailureError : On network, HTTP, or response-shape errors,
                                including a missing ``bundle`` part or an
                                unknown engine tag.
        """
        try:
            with httpx.Client(timeout=_TRANSFER_TIMEOUT) as client:
                response = client.get(self._url(bundle_id))
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportFailureError(
                f"{exc.response.status_code} {exc.response.reason_phrase}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportFailureError(f"{type(exc).__name__}: {exc}") from exc

        parts = _parse_form_data(response.headers.get("content-type", ""), response.content)
        if "bundle" not in parts:
            raise TransportFailureError(
                f"Bundle '{bundle_id}' response is missing the 'bundle' part. "
                f"Got parts: {sorted(parts)}"
            )

        try:
            return FetchedBundle(
                archive=parts["bundle"],
                name=parts.get("name", b"").decode("utf-8"),
                template_engine=parts.get("templateEngine", b"").decode("utf-8"),
            )
        except (UnicodeDecodeError, ValidationError) as exc:
            raise TransportFailureError(f"Bundle '{bundle_id}' response is invalid: {exc}") from exc

    def store_bundle(
        self,
        *,
        archive: bytes,
        name: str,
        bundle_id: str,
        template_engine: TemplateEngine,
    ) -> str:
        """
        Upload ``archive`` under ``name``.

        An empty ``bundle_id`` asks the server to create a new bundle; a
        non-empty one updates (and possibly renames) the existing bundle.

        Returns
        -------
        str : The id the server stored the bundle under.

        Raises
        ------
        TransportFailureError : On network or HTTP errors, or when the
                                response carries no id.
        """
        form = {
            "name": name,
            "id": bundle_id,
            "templateEngine": template_engine.value,
        }
        files = {"bundle": ("bundle.zip", archive, "application/zip")}

        try:
            with httpx.Client(timeout=_TRANSFER_TIMEOUT) as client:
                response = client.post(self._url(), data=form, files=files)
                response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransportFailureError(
                f"{exc.response.status_code} {exc.response.reason_phrase}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransportFailureError(f"{type(exc).__name__}: {exc}") from exc

        new_id = data.get("id") if isinstance(data, dict) else None
        if not new_id:
            raise TransportFailureError(
                f"Store response is missing the 'id' key. Got: {data!r}"
            )
        logger.info("Stored bundle '%s' as id %s", name, new_id)
        return str(new_id)
