#!/usr/bin/env python3
"""Acquire the sigstore trusted root through TUF.

The only trust that is compiled in is the TUF bootstrap root shipped in
``iav_data/``. It authenticates the TUF client, which then walks the root
rotation chain, checks snapshot/timestamp freshness and threshold signatures,
and hands back ``trusted_root.json``. Any failure is fatal: there is no
fallback to stale or unauthenticated trust material.

A different repository (and its bootstrap root) can be supplied explicitly;
the embedded root is never modified in place. With a persistent metadata
directory the cached, already rotated ``root.json`` is used instead.
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import pathlib
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, List, Optional

from sigstore.models import TrustedRoot
from tuf.ngclient import FetcherInterface, Updater

from iav_errors import TrustRootAcquisitionError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

GITHUB_TUF_URL = "https://tuf-repo.github.com"
TRUSTED_ROOT_TARGET = "trusted_root.json"
DEFAULT_TIMEOUT = 60.0

# Bootstrap roots bundled in iav_data, keyed by repository URL.
BOOTSTRAP_ROOTS = {
    GITHUB_TUF_URL: "tuf-repo.github.com.root.json",
}


def _read_resource(name: str) -> bytes:
    try:
        from importlib import resources

        return resources.files("iav_data").joinpath(name).read_bytes()
    except (ModuleNotFoundError, FileNotFoundError):
        pass
    return (pathlib.Path(__file__).parent / "iav_data" / name).read_bytes()


def load_bootstrap_root(repository_url: str = GITHUB_TUF_URL) -> bytes:
    """Return the embedded bootstrap root for a known repository."""
    name = BOOTSTRAP_ROOTS.get(repository_url.rstrip("/"))
    if name is None:
        raise TrustRootAcquisitionError(
            f"No embedded bootstrap root for {repository_url}",
            "Provide the repository's root.json explicitly",
        )
    try:
        return _read_resource(name)
    except OSError as exc:
        raise TrustRootAcquisitionError("Embedded bootstrap root is missing", str(exc)) from exc


def check_bootstrap_root(data: bytes) -> int:
    """Sanity-check a TUF root document and return its version."""
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise TrustRootAcquisitionError("Malformed bootstrap root", str(exc)) from exc
    signed = document.get("signed") if isinstance(document, dict) else None
    if not isinstance(signed, dict) or signed.get("_type") != "root":
        raise TrustRootAcquisitionError(
            "Malformed bootstrap root", "Expected a signed TUF metadata document of type 'root'"
        )
    version = signed.get("version")
    if not isinstance(version, int):
        raise TrustRootAcquisitionError("Malformed bootstrap root", "Missing root version")
    return version


def load_trusted_root(path: pathlib.Path, parser: Callable[[str], Any] = TrustedRoot.from_file) -> Any:
    """Load a trusted_root.json from disk (already distributed out of band)."""
    try:
        return parser(str(path))
    except Exception as exc:
        raise TrustRootAcquisitionError(f"error creating trusted root from {path}", str(exc)) from exc


# =============================================================================
# Provider
# =============================================================================


class TrustRootProvider:
    """Fetch the current ``TrustedRoot`` from a TUF repository.

    Args:
        repository_url: TUF repository base; targets live under ``/targets``.
        bootstrap_root: root.json bytes; defaults to the embedded snapshot.
        metadata_dir: persistent metadata cache; a fresh temporary directory
            per fetch when omitted.
        updater_factory: TUF client constructor (``tuf.ngclient.Updater``).
        root_parser: turns the downloaded target path into a TrustedRoot.
        fetcher: ``tuf.ngclient.FetcherInterface`` used for every download;
            the TUF default (urllib3 with a socket timeout) when omitted.
    """

    def __init__(
        self,
        repository_url: str = GITHUB_TUF_URL,
        bootstrap_root: Optional[bytes] = None,
        metadata_dir: Optional[pathlib.Path] = None,
        updater_factory: Callable[..., Any] = Updater,
        root_parser: Callable[[str], Any] = TrustedRoot.from_file,
        fetcher: Optional[FetcherInterface] = None,
    ):
        self.repository_url = repository_url.rstrip("/")
        self.bootstrap_root = (
            bootstrap_root if bootstrap_root is not None else load_bootstrap_root(self.repository_url)
        )
        self.bootstrap_version = check_bootstrap_root(self.bootstrap_root)
        self.metadata_dir = metadata_dir
        self.updater_factory = updater_factory
        self.root_parser = root_parser
        self.fetcher = fetcher

    def fetch(self, timeout: Optional[float] = DEFAULT_TIMEOUT) -> Any:
        """Return the current TrustedRoot, or raise TrustRootAcquisitionError."""
        return self._with_timeout(self._parse, timeout)

    def fetch_bytes(self, timeout: Optional[float] = DEFAULT_TIMEOUT) -> bytes:
        """Return the authenticated trusted_root.json document as downloaded."""
        return self._with_timeout(lambda path: pathlib.Path(path).read_bytes(), timeout)

    def _parse(self, path: str) -> Any:
        try:
            return self.root_parser(path)
        except Exception as exc:
            raise TrustRootAcquisitionError("error creating trusted root", str(exc)) from exc

    def _with_timeout(self, consume: Callable[[str], Any], timeout: Optional[float]) -> Any:
        """Run one acquisition, giving up on it after ``timeout`` seconds.

        Python threads cannot be interrupted, so a timed-out update keeps
        running in its worker thread until the fetcher's own socket timeout
        ends the request in flight. Its temporary directory belongs to that
        worker and is only removed once the worker returns. Nothing it
        produces afterwards is used.
        """
        if timeout is None:
            return self._acquire(consume)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="iav-tuf")
        future = executor.submit(self._acquire, consume)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            logger.warning(
                "TUF update of %s still running after %ss; abandoning it", self.repository_url, timeout
            )
            raise TrustRootAcquisitionError(
                f"Timed out fetching {TRUSTED_ROOT_TARGET} after {timeout}s",
                self.repository_url,
            ) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _acquire(self, consume: Callable[[str], Any]) -> Any:
        if self.metadata_dir is not None:
            return consume(self._download(pathlib.Path(self.metadata_dir)))
        with tempfile.TemporaryDirectory(prefix="iav-tuf-", ignore_cleanup_errors=True) as tmp:
            return consume(self._download(pathlib.Path(tmp)))

    def _trusted_root_metadata(self, metadata_dir: pathlib.Path) -> bytes:
        # A cached root.json was already verified (and possibly rotated) by an
        # earlier update, so it supersedes the bootstrap root.
        cached = metadata_dir / "root.json"
        if cached.exists():
            logger.debug("Using cached TUF root %s", cached)
            return cached.read_bytes()
        logger.debug("Bootstrapping TUF from root v%d", self.bootstrap_version)
        return self.bootstrap_root

    def _download(self, workdir: pathlib.Path) -> str:
        metadata_dir = workdir / "metadata"
        targets_dir = workdir / "targets"
        metadata_dir.mkdir(parents=True, exist_ok=True)
        targets_dir.mkdir(parents=True, exist_ok=True)

        try:
            updater = self.updater_factory(
                metadata_dir=str(metadata_dir),
                metadata_base_url=self.repository_url,
                target_dir=str(targets_dir),
                target_base_url=f"{self.repository_url}/targets/",
                fetcher=self.fetcher,
                bootstrap=self._trusted_root_metadata(metadata_dir),
            )
        except Exception as exc:
            raise TrustRootAcquisitionError("initializing tuf", str(exc)) from exc

        try:
            updater.refresh()
            info = updater.get_targetinfo(TRUSTED_ROOT_TARGET)
            if info is None:
                raise TrustRootAcquisitionError(
                    "error getting targets",
                    f"{TRUSTED_ROOT_TARGET} not found in {self.repository_url}",
                )
            path = updater.find_cached_target(info) or updater.download_target(info)
        except TrustRootAcquisitionError:
            raise
        except Exception as exc:
            raise TrustRootAcquisitionError("error getting targets", str(exc)) from exc

        logger.debug("Fetched %s from %s (%s)", TRUSTED_ROOT_TARGET, self.repository_url, path)
        return os.fspath(path)


# =============================================================================
# CLI
# =============================================================================


# pragma: no mutate
def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Fetch the sigstore trusted root through TUF",
    )
    parser.add_argument(
        "--tuf-url",
        default=GITHUB_TUF_URL,
        help=f"TUF repository base URL (default: {GITHUB_TUF_URL})",
    )
    parser.add_argument(
        "--tuf-root",
        type=pathlib.Path,
        help="Bootstrap root.json for the TUF repository (default: embedded)",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=pathlib.Path,
        help="Write trusted_root.json here instead of stdout",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Seconds to wait for the TUF update",
    )
    args = parser.parse_args(argv)

    try:
        bootstrap = args.tuf_root.read_bytes() if args.tuf_root else None
    except OSError as e:
        print(f"Error: cannot read {args.tuf_root}: {e}", file=sys.stderr)
        return 2

    try:
        provider = TrustRootProvider(args.tuf_url, bootstrap_root=bootstrap)
        document = provider.fetch_bytes(timeout=args.timeout)
    except TrustRootAcquisitionError as e:
        print(f"Error [{e.rule_id}]: {e.message}", file=sys.stderr)
        if e.details:
            print(f"  {e.details}", file=sys.stderr)
        return e.exit_code

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_bytes(document)
        digest = hashlib.sha256(document).hexdigest()
        print(
            f"Wrote {TRUSTED_ROOT_TARGET} ({len(document)} bytes, sha256:{digest}) to {args.output}"
            f" (bootstrap root v{provider.bootstrap_version})"
        )
    else:
        sys.stdout.write(document.decode("utf-8"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
