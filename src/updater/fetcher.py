#!/usr/bin/env python3
"""
CinePi5 Release Fetcher

Downloads a release into an isolated staging area, verifies every asset
against the release's checksum manifest and marks the candidate ready.

Staging layout:
    <staging_dir>/.partial/      assets of the fetch in progress
    <staging_dir>/candidate/     verified assets of the ready candidate
    <staging_dir>/update_ready   one-shot JSON marker (version, digests)

The marker is written last and only for a fully verified candidate.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import requests

from archiver.records import sha256_file
from common.config import ReleaseChannel
from common.decorators import retry
from common.locking import TargetLock
from common.exceptions import (
    DownloadError,
    InvalidConfigError,
    ReleaseNotFoundError,
    VerificationFailedError,
)
from utils.atomic_write import atomic_write_json, fsync_dir

logger = logging.getLogger(__name__)

READY_MARKER = "update_ready"
CANDIDATE_DIR = "candidate"
PARTIAL_DIR = ".partial"
CHUNK_SIZE = 1024 * 1024


def _transient(error: requests.RequestException) -> bool:
    """Client errors other than timeouts and rate limits will not heal on retry."""
    status = getattr(error.response, "status_code", None)
    return status is None or status >= 500 or status in (408, 429)


class CandidateState(Enum):
    """Lifecycle of a staged release."""
    FETCHING = "fetching"
    VERIFYING = "verifying"
    READY = "ready"
    REJECTED = "rejected"


@dataclass
class ReleaseCandidate:
    """A release being staged, or staged and ready to apply."""
    version: str
    asset_uris: Dict[str, str]
    checksum_manifest_uri: str
    staging_dir: Path
    package_asset: str
    state: CandidateState = CandidateState.FETCHING
    assets: Dict[str, Path] = field(default_factory=dict)
    digests: Dict[str, str] = field(default_factory=dict)
    hook_path: Optional[Path] = None
    fetched_at: Optional[str] = None

    @property
    def package_path(self) -> Path:
        return self.assets[self.package_asset]

    def to_marker(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "asset_uris": self.asset_uris,
            "checksum_manifest_uri": self.checksum_manifest_uri,
            "package_asset": self.package_asset,
            "digests": self.digests,
            "hook": self.hook_path.name if self.hook_path else None,
            "fetched_at": self.fetched_at,
        }

    @classmethod
    def from_marker(cls, staging_dir: Path, data: Dict[str, Any]) -> "ReleaseCandidate":
        candidate_dir = staging_dir / CANDIDATE_DIR
        digests = dict(data["digests"])
        hook = data.get("hook")
        return cls(
            version=data["version"],
            asset_uris=dict(data.get("asset_uris", {})),
            checksum_manifest_uri=data.get("checksum_manifest_uri", ""),
            staging_dir=staging_dir,
            package_asset=data["package_asset"],
            state=CandidateState.READY,
            assets={name: candidate_dir / name for name in digests},
            digests=digests,
            hook_path=candidate_dir / hook if hook else None,
            fetched_at=data.get("fetched_at"),
        )


def parse_manifest(text: str) -> Dict[str, str]:
    """
    Parse ``sha256sum`` output into ``{file name: digest}``.

    Paths in the manifest are reduced to their base name; a leading ``*``
    (binary mode marker) is ignored.
    """
    entries = {}
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2 or len(parts[0]) != 64:
            continue
        name = os.path.basename(parts[1].strip().lstrip("*"))
        entries[name] = parts[0].lower()
    return entries


class ReleaseFetcher:
    """
    Fetches and verifies release candidates.

    Args:
        staging_dir: Staging area (outside the install dir)
        request_timeout: Seconds per HTTP request
        session: Optional pre-configured requests session
        lock_path: Target-set lock taken while staging changes (None: unlocked)
        wait_for_lock: Block on the lock instead of failing fast
    """

    USER_AGENT = "cinepi5-updater"

    def __init__(
        self,
        staging_dir: Union[str, Path],
        request_timeout: int = 30,
        session: Optional[requests.Session] = None,
        lock_path: Optional[Union[str, Path]] = None,
        wait_for_lock: bool = False,
    ):
        self.staging_dir = Path(staging_dir)
        self.request_timeout = request_timeout
        self.lock_path = Path(lock_path) if lock_path else None
        self.wait_for_lock = wait_for_lock
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "User-Agent": self.USER_AGENT,
        })

    @property
    def marker_path(self) -> Path:
        return self.staging_dir / READY_MARKER

    @property
    def candidate_dir(self) -> Path:
        return self.staging_dir / CANDIDATE_DIR

    @property
    def partial_dir(self) -> Path:
        return self.staging_dir / PARTIAL_DIR

    # ------------------------------------------------------------------
    # Staged candidate
    # ------------------------------------------------------------------

    def ready_candidate(self, verify: bool = False) -> Optional[ReleaseCandidate]:
        """
        Return the staged Ready candidate, or None.

        Args:
            verify: Re-hash every staged asset against the marker

        Raises:
            VerificationFailedError: ``verify`` found a modified asset.
        """
        try:
            data = json.loads(self.marker_path.read_text(encoding="utf-8"))
            candidate = ReleaseCandidate.from_marker(self.staging_dir, data)
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable ready marker: {e}")
            return None

        missing = [name for name, path in candidate.assets.items() if not path.is_file()]
        if missing or candidate.package_asset not in candidate.assets:
            logger.warning(f"Ready marker present but staged assets missing: {missing}")
            return None

        if verify:
            for name, path in candidate.assets.items():
                actual = sha256_file(path)
                if actual != candidate.digests[name]:
                    raise VerificationFailedError(
                        candidate.version, name, "staged asset changed after verification"
                    )
        return candidate

    def discard(self) -> None:
        """Remove every staging artifact (marker first)."""
        if self.marker_path.exists():
            self.marker_path.unlink()
        for path in (self.candidate_dir, self.partial_dir):
            if path.exists():
                shutil.rmtree(path)
        logger.debug(f"Staging area {self.staging_dir} cleared")

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _auth_headers(self, channel: ReleaseChannel) -> Dict[str, str]:
        path = channel.credential_file
        if path is None:
            return {}
        try:
            token = Path(path).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            logger.debug(f"No credential file at {path}, fetching unauthenticated")
            return {}
        except OSError as e:
            raise InvalidConfigError("update.credential_file", str(path), str(e)) from e
        if not token:
            logger.warning(f"Credential file {path} is empty, fetching unauthenticated")
            return {}
        return {"Authorization": f"Bearer {token}"}

    @staticmethod
    def _descriptor_url(channel: ReleaseChannel, version: Optional[str]) -> str:
        url = channel.descriptor_url
        if version and url.rstrip("/").endswith("/releases/latest"):
            return url.rstrip("/")[: -len("latest")] + f"tags/{version}"
        return url

    @retry(max_attempts=3, delay=2.0, exceptions=(DownloadError,))
    def _get_descriptor(self, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = self.session.get(url, headers=headers, timeout=self.request_timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise DownloadError(url, str(e), cause=e, recoverable=_transient(e)) from e
        except ValueError as e:
            raise DownloadError(url, "release descriptor is not valid JSON", cause=e) from e

    def resolve(self, channel: ReleaseChannel, version: Optional[str] = None) -> ReleaseCandidate:
        """
        Resolve a release descriptor into a (not yet fetched) candidate.

        Raises:
            DownloadError: Descriptor could not be retrieved.
            ReleaseNotFoundError: Version or required assets missing.
        """
        descriptor = self._get_descriptor(
            self._descriptor_url(channel, version), self._auth_headers(channel)
        )

        tag = descriptor.get("tag_name")
        if not tag:
            raise ReleaseNotFoundError(channel.name, "descriptor has no tag_name")
        if version and tag != version:
            raise ReleaseNotFoundError(channel.name, f"requested {version}, channel offers {tag}")

        assets = {
            a["name"]: a["browser_download_url"]
            for a in descriptor.get("assets", [])
            if "name" in a and "browser_download_url" in a
        }
        for required in (channel.package_asset, channel.checksum_asset):
            if required not in assets:
                raise ReleaseNotFoundError(channel.name, f"release {tag} lacks {required}")

        wanted = [channel.package_asset]
        if channel.hook_asset and channel.hook_asset in assets:
            wanted.append(channel.hook_asset)

        return ReleaseCandidate(
            version=tag,
            asset_uris={name: assets[name] for name in wanted},
            checksum_manifest_uri=assets[channel.checksum_asset],
            staging_dir=self.staging_dir,
            package_asset=channel.package_asset,
        )

    @retry(max_attempts=3, delay=2.0, exceptions=(DownloadError,))
    def _download(self, url: str, dest: Path, headers: Dict[str, str]) -> str:
        """Stream ``url`` into ``dest``; returns the sha256 of what was written."""
        digest = hashlib.sha256()
        try:
            with self.session.get(
                url,
                headers={**headers, "Accept": "application/octet-stream"},
                timeout=self.request_timeout,
                stream=True,
            ) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            digest.update(chunk)
                    f.flush()
                    os.fsync(f.fileno())
        except requests.RequestException as e:
            raise DownloadError(url, str(e), cause=e, recoverable=_transient(e)) from e
        return digest.hexdigest()

    def _reject(self, candidate: ReleaseCandidate, asset: str, reason: str) -> None:
        candidate.state = CandidateState.REJECTED
        shutil.rmtree(self.partial_dir, ignore_errors=True)
        logger.error(f"Release {candidate.version} rejected: {asset}: {reason}")
        raise VerificationFailedError(candidate.version, asset, reason)

    def fetch(self, channel: ReleaseChannel, version: Optional[str] = None) -> ReleaseCandidate:
        """
        Stage and verify a release.

        If a Ready candidate is already staged and matches ``version`` (or
        no version is requested), it is returned without any network
        access and the staging area is left untouched.

        Raises:
            DownloadError: Network failure after retries; nothing staged.
            LockUnavailableError: An update or backup holds the target lock.
            ReleaseNotFoundError: Descriptor lacks the version or assets.
            VerificationFailedError: Digest mismatch or missing manifest
                entry; payload discarded, no ready marker.
        """
        existing = self.ready_candidate()
        if existing is not None and (version is None or existing.version == version):
            if version is None:
                logger.info(
                    f"Update {existing.version} already staged and ready; newer releases "
                    f"are not checked until it is applied or discarded"
                )
            else:
                logger.info(f"Update {existing.version} already staged and ready")
            return existing

        if self.lock_path is None:
            return self._stage(channel, version)
        with TargetLock(self.lock_path, blocking=self.wait_for_lock):
            return self._stage(channel, version)

    def _stage(self, channel: ReleaseChannel, version: Optional[str]) -> ReleaseCandidate:
        """Download, verify and promote a release; caller holds the target lock."""
        candidate = self.resolve(channel, version)
        headers = self._auth_headers(channel)
        logger.info(f"Fetching release {candidate.version} from {channel.name}")

        if self.partial_dir.exists():
            shutil.rmtree(self.partial_dir)
        self.partial_dir.mkdir(parents=True)

        try:
            manifest_path = self.partial_dir / channel.checksum_asset
            self._download(candidate.checksum_manifest_uri, manifest_path, headers)

            computed = {}
            for name, url in candidate.asset_uris.items():
                logger.info(f"Downloading {name}...")
                computed[name] = self._download(url, self.partial_dir / name, headers)
        except BaseException:
            shutil.rmtree(self.partial_dir, ignore_errors=True)
            raise

        candidate.state = CandidateState.VERIFYING
        manifest = parse_manifest(manifest_path.read_text(encoding="utf-8", errors="replace"))
        for name, digest in computed.items():
            if name not in manifest:
                self._reject(candidate, name, "no entry in checksum manifest")
            if manifest[name] != digest:
                self._reject(
                    candidate, name, f"checksum mismatch (expected {manifest[name]}, got {digest})"
                )
        logger.info("Checksum verified successfully.")

        # Replace any previous candidate; marker goes last
        if self.marker_path.exists():
            self.marker_path.unlink()
        if self.candidate_dir.exists():
            shutil.rmtree(self.candidate_dir)
        manifest_path.unlink()
        os.replace(self.partial_dir, self.candidate_dir)
        fsync_dir(self.staging_dir)

        candidate.assets = {name: self.candidate_dir / name for name in computed}
        candidate.digests = computed
        if channel.hook_asset and channel.hook_asset in computed:
            candidate.hook_path = self.candidate_dir / channel.hook_asset
            candidate.hook_path.chmod(0o755)
        candidate.fetched_at = datetime.now(timezone.utc).isoformat()
        candidate.state = CandidateState.READY

        atomic_write_json(self.marker_path, candidate.to_marker())
        logger.info(f"Update {candidate.version} downloaded and ready for installation.")
        return candidate

