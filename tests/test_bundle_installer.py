import asyncio
import hashlib
import io
import tarfile

import pytest
from aiohttp import web

from tutor_runtime.core.bundle_installer import BundleInstaller, sanitize_segment, scope_parts
from tutor_runtime.core.errors import (
    ErrorKind,
    ExtractError,
    IntegrityError,
    NetworkError,
    Result,
    ValidationError,
)


def _descriptor(artifact_url, sha256="", **overrides):
    data = {
        "bundle_type": "chapter",
        "scope_id": "course1/ch01",
        "version": "1.0.0",
        "artifact_url": artifact_url,
        "sha256": sha256,
        "size_bytes": 0,
        "mandatory": True,
    }
    data.update(overrides)
    return data


def _leftovers(root):
    return [p for p in root.rglob("*") if ".tmp-" in p.name]


def test_sanitize_segment_and_scope_parts():
    assert sanitize_segment("a b/c") == "a_b_c"
    assert sanitize_segment("v1.2-rc") == "v1.2-rc"
    assert scope_parts("course 1/ch01") == ["course_1", "ch01"]
    assert scope_parts("../etc") == ["etc"]


@pytest.mark.asyncio
async def test_install_from_local_archive(settings, index_store, archive_bytes, tmp_path):
    data = archive_bytes({"content/curriculum/README.md": "# hello"})
    artifact = tmp_path / "bundle.tar.gz"
    artifact.write_bytes(data)
    installer = BundleInstaller(settings, index_store)

    result = await installer.install(_descriptor(str(artifact), hashlib.sha256(data).hexdigest()))

    assert result.ok, result.error
    target = settings.bundles_root / "chapter" / "course1" / "ch01" / "1.0.0"
    assert result.value.path == str(target)
    assert (target / "content" / "curriculum" / "README.md").read_text() == "# hello"

    index = await index_store.get()
    entry = index.get_entry("chapter", "course1/ch01")
    assert entry.version == "1.0.0"
    assert entry.sha256 == hashlib.sha256(data).hexdigest()
    assert not list((settings.bundles_root / ".downloads").iterdir())


@pytest.mark.asyncio
async def test_checksum_mismatch_leaves_no_state(settings, index_store, archive_bytes, tmp_path):
    artifact = tmp_path / "bundle.tar.gz"
    artifact.write_bytes(archive_bytes({"a.txt": "a"}))
    installer = BundleInstaller(settings, index_store)

    result = await installer.install(_descriptor(str(artifact), "0" * 64))

    assert not result.ok
    assert isinstance(result.error, IntegrityError)
    assert result.retryable
    assert not (settings.bundles_root / "chapter" / "course1" / "ch01" / "1.0.0").exists()
    assert (await index_store.get()).get_entry("chapter", "course1/ch01") is None
    assert not list((settings.bundles_root / ".downloads").iterdir())
    assert not _leftovers(settings.bundles_root)


@pytest.mark.asyncio
async def test_missing_required_fields_is_validation_error(settings, index_store):
    installer = BundleInstaller(settings, index_store)

    result = await installer.install(_descriptor("", scope_id="c1"))

    assert not result.ok
    assert isinstance(result.error, ValidationError)
    assert result.error.kind == ErrorKind.VALIDATION
    assert result.retryable is False


@pytest.mark.asyncio
async def test_not_an_archive_is_extract_error(settings, index_store, tmp_path):
    artifact = tmp_path / "bundle.bin"
    artifact.write_bytes(b"definitely not an archive")
    installer = BundleInstaller(settings, index_store)

    result = await installer.install(_descriptor(str(artifact)))

    assert isinstance(result.error, ExtractError)
    assert not _leftovers(settings.bundles_root)
    assert (await index_store.get()).get_entry("chapter", "course1/ch01") is None


@pytest.mark.asyncio
async def test_path_traversal_member_is_rejected(settings, index_store, tmp_path):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        payload = b"owned"
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    artifact = tmp_path / "evil.tar.gz"
    artifact.write_bytes(buffer.getvalue())
    installer = BundleInstaller(settings, index_store)

    result = await installer.install(_descriptor(str(artifact)))

    assert isinstance(result.error, ExtractError)
    assert not (settings.bundles_root / "chapter" / "course1" / "ch01" / "escape.txt").exists()
    assert not _leftovers(settings.bundles_root)


@pytest.mark.asyncio
async def test_racing_installs_produce_one_directory(settings, index_store, archive_bytes, tmp_path):
    data = archive_bytes({"agents/main.md": "agent"})
    artifact = tmp_path / "bundle.tar.gz"
    artifact.write_bytes(data)
    installer = BundleInstaller(settings, index_store)
    descriptor = _descriptor(str(artifact), bundle_type="app_agents", scope_id="core")

    first, second = await asyncio.gather(installer.install(descriptor), installer.install(descriptor))

    assert first.ok and second.ok
    parent = settings.bundles_root / "app_agents" / "core"
    assert [p.name for p in parent.iterdir()] == ["1.0.0"]
    assert (parent / "1.0.0" / "agents" / "main.md").read_text() == "agent"
    entry = (await index_store.get()).get_entry("app_agents", "core")
    assert entry.path == str(parent / "1.0.0")


@pytest.mark.asyncio
async def test_remote_download_reports_monotonic_progress(
    settings, index_store, archive_bytes, serve_app
):
    data = archive_bytes({f"file{i}.txt": "x" * 5000 for i in range(20)})

    async def _artifact(request):
        return web.Response(body=data, content_type="application/gzip")

    app = web.Application()
    app.router.add_get("/artifacts/bundle.tar.gz", _artifact)
    settings.download_chunk_size = 1024
    installer = BundleInstaller(settings, index_store)
    percents = []

    async with serve_app(app) as server:
        url = str(server.make_url("/artifacts/bundle.tar.gz"))
        result = await installer.install(
            _descriptor(url, hashlib.sha256(data).hexdigest(), bundle_type="experts", scope_id="python"),
            on_progress=lambda p: percents.append(p.percent),
        )
    await installer.close()

    assert result.ok, result.error
    assert percents == sorted(percents)
    assert percents[-1] == 100


@pytest.mark.asyncio
async def test_remote_http_error_is_network_error(settings, index_store, serve_app):
    async def _missing(request):
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/artifacts/missing.tar.gz", _missing)
    installer = BundleInstaller(settings, index_store)

    async with serve_app(app) as server:
        result = await installer.install(_descriptor(str(server.make_url("/artifacts/missing.tar.gz"))))
    await installer.close()

    assert isinstance(result.error, NetworkError)
    assert result.error.status == 404
    assert not result.retryable


class _ResolvingBackend:
    def __init__(self, url):
        self.url = url
        self.refs = []

    async def resolve_artifact_url(self, ref):
        self.refs.append(ref)
        return Result.success(self.url)

    async def get_session(self):
        raise AssertionError("local artifacts must not open an HTTP session")


@pytest.mark.asyncio
async def test_opaque_reference_is_resolved_through_backend(
    settings, index_store, archive_bytes, tmp_path
):
    artifact = tmp_path / "bundle.tar.gz"
    artifact.write_bytes(archive_bytes({"x.txt": "x"}))
    backend = _ResolvingBackend(str(artifact))
    installer = BundleInstaller(settings, index_store, backend=backend)

    result = await installer.install(_descriptor("bundles/chapter/course1/ch01/1.0.0.tar.gz"))

    assert result.ok, result.error
    assert backend.refs == ["bundles/chapter/course1/ch01/1.0.0.tar.gz"]


@pytest.mark.asyncio
async def test_opaque_reference_without_backend_fails(settings, index_store):
    installer = BundleInstaller(settings, index_store)

    result = await installer.install(_descriptor("bundles/opaque-ref"))

    assert isinstance(result.error, NetworkError)
    assert not result.retryable
