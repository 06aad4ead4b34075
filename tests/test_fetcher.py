"""
Tests for release fetching and staged-candidate verification.
"""

import json
import pytest
import requests
from unittest.mock import MagicMock

from conftest import make_package, sha256_bytes, snapshot_tree

LATEST = "https://api.github.com/repos/example/CinePi5/releases/latest"
DL = "https://github.com/example/CinePi5/releases/download"


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self.payload = payload
        self.content = content

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)

    def json(self):
        if self.payload is None:
            raise ValueError("no JSON")
        return self.payload

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), 7):
            yield self.content[i:i + 7]

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


def _channel(credential_file=None):
    from common.config import ReleaseChannel
    return ReleaseChannel(
        name="example/CinePi5",
        descriptor_url=LATEST,
        credential_file=credential_file,
    )


def _release(version="v5.2.0", package=None, hook=b"#!/bin/sh\nexit 0\n", manifest=None):
    """Routes for one published release: descriptor, manifest and assets."""
    package = package if package is not None else make_package({"app.py": b"print('v2')\n"})
    assets = {"cinepi5_pkg.tar.gz": package}
    if hook is not None:
        assets["post_update.sh"] = hook
    if manifest is None:
        manifest = "".join(f"{sha256_bytes(data)}  {name}\n" for name, data in assets.items())
    assets["checksums.sha256"] = manifest.encode()

    descriptor = {
        "tag_name": version,
        "assets": [
            {"name": name, "browser_download_url": f"{DL}/{version}/{name}"}
            for name in assets
        ],
    }
    routes = {f"{DL}/{version}/{name}": FakeResponse(content=data) for name, data in assets.items()}
    routes[LATEST] = FakeResponse(payload=descriptor)
    routes[LATEST[: -len("latest")] + f"tags/{version}"] = FakeResponse(payload=descriptor)
    return routes


def _session(routes):
    session = MagicMock()

    def get(url, **kwargs):
        result = routes.get(url)
        if result is None:
            return FakeResponse(status_code=404)
        if isinstance(result, Exception):
            raise result
        return result

    session.get.side_effect = get
    return session


@pytest.fixture
def staging(tmp_path):
    return tmp_path / "ota"


class TestParseManifest:

    @pytest.mark.unit
    def test_sha256sum_formats(self):
        from updater.fetcher import parse_manifest

        digest = "a" * 64
        text = (
            f"{digest}  cinepi5_pkg.tar.gz\n"
            f"{digest.upper()} *dist/post_update.sh\n"
            "not a checksum line\n"
            "\n"
        )

        assert parse_manifest(text) == {
            "cinepi5_pkg.tar.gz": digest,
            "post_update.sh": digest,
        }


class TestReleaseFetcher:
    """Tests for ReleaseFetcher.fetch."""

    @pytest.mark.unit
    def test_fetch_stages_verified_candidate(self, staging):
        from updater.fetcher import CandidateState, ReleaseFetcher

        routes = _release()
        fetcher = ReleaseFetcher(staging, session=_session(routes))

        candidate = fetcher.fetch(_channel())

        assert candidate.version == "v5.2.0"
        assert candidate.state == CandidateState.READY
        assert candidate.package_path == staging / "candidate" / "cinepi5_pkg.tar.gz"
        assert candidate.hook_path.stat().st_mode & 0o777 == 0o755
        assert not (staging / ".partial").exists()
        assert not (staging / "candidate" / "checksums.sha256").exists()

        marker = json.loads((staging / "update_ready").read_text())
        assert marker["version"] == "v5.2.0"
        assert marker["digests"]["cinepi5_pkg.tar.gz"] == sha256_bytes(
            routes[f"{DL}/v5.2.0/cinepi5_pkg.tar.gz"].content
        )
        assert fetcher.ready_candidate(verify=True).version == "v5.2.0"

    @pytest.mark.unit
    def test_fetch_without_hook(self, staging):
        from updater.fetcher import ReleaseFetcher

        fetcher = ReleaseFetcher(staging, session=_session(_release(hook=None)))
        candidate = fetcher.fetch(_channel())

        assert candidate.hook_path is None
        assert list(candidate.assets) == ["cinepi5_pkg.tar.gz"]

    @pytest.mark.unit
    def test_ready_candidate_needs_no_network(self, staging):
        from updater.fetcher import ReleaseFetcher

        session = _session(_release())
        fetcher = ReleaseFetcher(staging, session=session)
        fetcher.fetch(_channel())
        tree_before = snapshot_tree(staging)
        mtimes_before = {p: p.stat().st_mtime_ns for p in staging.rglob("*")}
        session.get.reset_mock()

        again = fetcher.fetch(_channel())
        same_version = fetcher.fetch(_channel(), version="v5.2.0")

        assert again.version == same_version.version == "v5.2.0"
        session.get.assert_not_called()
        assert snapshot_tree(staging) == tree_before
        assert {p: p.stat().st_mtime_ns for p in staging.rglob("*")} == mtimes_before

    @pytest.mark.unit
    def test_checksum_mismatch_rejected(self, staging):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import VerificationFailedError

        manifest = f"{'0' * 64}  cinepi5_pkg.tar.gz\n{'1' * 64}  post_update.sh\n"
        fetcher = ReleaseFetcher(staging, session=_session(_release(manifest=manifest)))

        with pytest.raises(VerificationFailedError):
            fetcher.fetch(_channel())

        assert not (staging / "update_ready").exists()
        assert not (staging / ".partial").exists()
        assert not (staging / "candidate").exists()

    @pytest.mark.unit
    def test_asset_missing_from_manifest_rejected(self, staging):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import VerificationFailedError

        package = make_package({"app.py": b"x"})
        manifest = f"{sha256_bytes(package)}  cinepi5_pkg.tar.gz\n"
        fetcher = ReleaseFetcher(
            staging, session=_session(_release(package=package, manifest=manifest))
        )

        with pytest.raises(VerificationFailedError) as exc_info:
            fetcher.fetch(_channel())

        assert exc_info.value.details["asset"] == "post_update.sh"
        assert fetcher.ready_candidate() is None

    @pytest.mark.unit
    def test_release_without_checksums(self, staging):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import ReleaseNotFoundError

        routes = _release()
        descriptor = routes[LATEST].payload
        descriptor["assets"] = [a for a in descriptor["assets"] if a["name"] != "checksums.sha256"]
        fetcher = ReleaseFetcher(staging, session=_session(routes))

        with pytest.raises(ReleaseNotFoundError):
            fetcher.fetch(_channel())
        assert not staging.exists()

    @pytest.mark.unit
    def test_descriptor_connection_error(self, staging, no_sleep):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import DownloadError

        session = _session({LATEST: requests.ConnectionError("network unreachable")})
        fetcher = ReleaseFetcher(staging, session=session)

        with pytest.raises(DownloadError):
            fetcher.fetch(_channel())

        assert session.get.call_count == 3
        assert not staging.exists()

    @pytest.mark.unit
    def test_descriptor_not_found(self, staging, no_sleep):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import DownloadError

        session = _session({})
        fetcher = ReleaseFetcher(staging, session=session)

        with pytest.raises(DownloadError) as exc_info:
            fetcher.fetch(_channel())

        assert not exc_info.value.recoverable
        assert session.get.call_count == 1

    @pytest.mark.unit
    def test_failed_download_keeps_previous_candidate(self, staging, no_sleep):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import DownloadError

        routes = _release()
        fetcher = ReleaseFetcher(staging, session=_session(routes))
        fetcher.fetch(_channel())
        marker_before = (staging / "update_ready").read_bytes()

        newer = _release(version="v5.3.0")
        newer[f"{DL}/v5.3.0/cinepi5_pkg.tar.gz"] = requests.ConnectionError("reset by peer")
        fetcher.session = _session(newer)

        with pytest.raises(DownloadError):
            fetcher.fetch(_channel(), version="v5.3.0")

        assert not (staging / ".partial").exists()
        assert (staging / "update_ready").read_bytes() == marker_before
        assert fetcher.ready_candidate(verify=True).version == "v5.2.0"

    @pytest.mark.unit
    def test_newer_version_replaces_candidate(self, staging):
        from updater.fetcher import ReleaseFetcher

        fetcher = ReleaseFetcher(staging, session=_session(_release()))
        fetcher.fetch(_channel())

        fetcher.session = _session(_release(version="v5.3.0", hook=None))
        candidate = fetcher.fetch(_channel(), version="v5.3.0")

        assert candidate.version == "v5.3.0"
        assert not (staging / "candidate" / "post_update.sh").exists()
        assert fetcher.ready_candidate().version == "v5.3.0"

    @pytest.mark.unit
    def test_version_uses_tag_endpoint(self, staging):
        from updater.fetcher import ReleaseFetcher

        session = _session(_release(version="v5.1.4"))
        fetcher = ReleaseFetcher(staging, session=session)

        fetcher.fetch(_channel(), version="v5.1.4")

        first_url = session.get.call_args_list[0].args[0]
        assert first_url.endswith("/releases/tags/v5.1.4")

    @pytest.mark.unit
    def test_version_mismatch(self, staging):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import ReleaseNotFoundError

        routes = _release(version="v5.2.0")
        routes[LATEST[: -len("latest")] + "tags/v9.9.9"] = routes[LATEST]
        fetcher = ReleaseFetcher(staging, session=_session(routes))

        with pytest.raises(ReleaseNotFoundError):
            fetcher.fetch(_channel(), version="v9.9.9")

    @pytest.mark.unit
    def test_bearer_token(self, staging, tmp_path):
        from updater.fetcher import ReleaseFetcher

        token = tmp_path / "github_token"
        token.write_text("ghp_example\n")
        session = _session(_release())
        fetcher = ReleaseFetcher(staging, session=session)

        fetcher.fetch(_channel(credential_file=token))

        for call in session.get.call_args_list:
            assert call.kwargs["headers"]["Authorization"] == "Bearer ghp_example"

    @pytest.mark.unit
    @pytest.mark.parametrize("content", [None, ""])
    def test_unauthenticated_without_token(self, staging, tmp_path, content):
        from updater.fetcher import ReleaseFetcher

        token = tmp_path / "github_token"
        if content is not None:
            token.write_text(content)
        session = _session(_release())
        fetcher = ReleaseFetcher(staging, session=session)

        fetcher.fetch(_channel(credential_file=token))

        for call in session.get.call_args_list:
            assert "Authorization" not in call.kwargs["headers"]

    @pytest.mark.unit
    def test_fetch_rejected_while_target_locked(self, staging, tmp_path):
        from common.exceptions import LockUnavailableError
        from common.locking import TargetLock
        from updater.fetcher import ReleaseFetcher

        lock_path = tmp_path / "lock" / "cinepi5.lock"
        session = _session(_release())
        fetcher = ReleaseFetcher(staging, session=session, lock_path=lock_path)

        with TargetLock(lock_path):
            with pytest.raises(LockUnavailableError):
                fetcher.fetch(_channel())

        session.get.assert_not_called()
        assert not staging.exists()

        assert fetcher.fetch(_channel()).version == "v5.2.0"
        assert fetcher.ready_candidate() is not None

    @pytest.mark.unit
    def test_staged_candidate_returned_while_target_locked(self, staging, tmp_path):
        from common.locking import TargetLock
        from updater.fetcher import ReleaseFetcher

        lock_path = tmp_path / "cinepi5.lock"
        fetcher = ReleaseFetcher(staging, session=_session(_release()), lock_path=lock_path)
        fetcher.fetch(_channel())

        with TargetLock(lock_path):
            assert fetcher.fetch(_channel()).version == "v5.2.0"

    @pytest.mark.unit
    def test_staged_candidate_blocks_latest_check(self, staging, caplog):
        import logging
        from updater.fetcher import ReleaseFetcher

        fetcher = ReleaseFetcher(staging, session=_session(_release()))
        fetcher.fetch(_channel())
        fetcher.session = _session(_release(version="v5.3.0"))

        with caplog.at_level(logging.INFO, logger="updater.fetcher"):
            assert fetcher.fetch(_channel()).version == "v5.2.0"

        fetcher.session.get.assert_not_called()
        assert "not checked until it is applied or discarded" in caplog.text


class TestReadyCandidate:
    """Tests for reading back the staged candidate."""

    @pytest.mark.unit
    def test_no_marker(self, staging):
        from updater.fetcher import ReleaseFetcher

        assert ReleaseFetcher(staging, session=MagicMock()).ready_candidate() is None

    @pytest.mark.unit
    def test_tampered_asset(self, staging):
        from updater.fetcher import ReleaseFetcher
        from common.exceptions import VerificationFailedError

        fetcher = ReleaseFetcher(staging, session=_session(_release()))
        candidate = fetcher.fetch(_channel())
        candidate.package_path.write_bytes(b"tampered")

        assert fetcher.ready_candidate() is not None
        with pytest.raises(VerificationFailedError):
            fetcher.ready_candidate(verify=True)

    @pytest.mark.unit
    def test_missing_asset_ignores_marker(self, staging):
        from updater.fetcher import ReleaseFetcher

        fetcher = ReleaseFetcher(staging, session=_session(_release()))
        candidate = fetcher.fetch(_channel())
        candidate.package_path.unlink()

        assert fetcher.ready_candidate() is None

    @pytest.mark.unit
    def test_discard(self, staging):
        from updater.fetcher import ReleaseFetcher

        fetcher = ReleaseFetcher(staging, session=_session(_release()))
        fetcher.fetch(_channel())
        fetcher.discard()

        assert not (staging / "update_ready").exists()
        assert not (staging / "candidate").exists()
