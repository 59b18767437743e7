import os
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import Config, Link
from .differ import ChangeKind, TreeDiffer
from .errors import (
    BackupError, FileFailure, ManifestMissing, PartialFailure, ReadFailure, WriteFailure,
)
from .fingerprint import hash_file_content
from .manifest import Manifest, ManifestLock, VersionInfo
from .materializer import VersionMaterializer
from .restore import LATEST, RestoreEngine, RestoreResult, VersionSelector


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('linkbackup')


class LinkState(Enum):
    IDLE = 'idle'
    DIFFING = 'diffing'
    MATERIALIZING = 'materializing'
    PERSISTING = 'persisting'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class PerLinkResult:
    """Outcome of one backup pass over a link."""
    link: Link
    state: LinkState = LinkState.IDLE
    version: Optional[int] = None
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: int = 0
    bytes_copied: int = 0
    errors: List[FileFailure] = field(default_factory=list)
    failure: Optional[Exception] = None
    dry_run: bool = False

    @property
    def status(self) -> str:
        if self.state is LinkState.FAILED:
            return "failed"
        if self.errors:
            return "completed with errors"
        return "ok"

    def raise_for_status(self) -> None:
        """Raise the link failure, or PartialFailure if some files had errors."""
        if self.failure is not None:
            raise self.failure
        if self.errors:
            raise PartialFailure(
                f"Link '{self.link.name}' completed with {len(self.errors)} errors", self.errors
            )


class BackupOperations:
    """Runs backup, restore, list and check over the configured links."""

    def __init__(self, config: Config):
        """
        Initialize BackupOperations with an explicit configuration.

        Args:
            config (Config): Links and options used by every operation
        """
        self.config = config
        logger.debug(f"Initialized BackupOperations with {len(config.links)} links")

    def backup(self, links: Optional[Sequence[Link]] = None, dry_run: bool = False) -> List[PerLinkResult]:
        """
        Back up every given link (all configured links by default).

        A failing link never stops the others. With more than one worker
        configured the links are processed in parallel; results always come
        back in link order.

        Args:
            links: Links to back up, defaults to all configured links
            dry_run (bool): Only diff and report, create no version

        Returns:
            List[PerLinkResult]: One result per link
        """
        links = list(self.config.links if links is None else links)
        logger.info(f"Starting backup of {len(links)} links")

        if self.config.workers > 1 and len(links) > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
                results = list(executor.map(lambda link: self.backup_link(link, dry_run), links))
        else:
            results = [self.backup_link(link, dry_run) for link in links]

        failed = sum(1 for result in results if result.status == "failed")
        with_errors = sum(1 for result in results if result.status == "completed with errors")
        logger.info(f"Backup finished: {len(results) - failed} links done, {failed} failed, "
                    f"{with_errors} completed with errors")
        return results

    def backup_link(self, link: Link, dry_run: bool = False) -> PerLinkResult:
        """
        Run one backup pass over a link.

        The manifest is persisted only after materialization has finished, so
        an interrupted pass leaves at most an orphaned version directory that
        no manifest refers to.

        Args:
            link (Link): Link to back up
            dry_run (bool): Only diff and report, create no version

        Returns:
            PerLinkResult: The pass outcome; failures are reported, not raised
        """
        result = PerLinkResult(link=link, dry_run=dry_run)
        try:
            self._check_source(link)
            try:
                link.destination.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WriteFailure(link.destination, f"cannot create destination: {e}") from e

            with ManifestLock(link.destination):
                manifest = Manifest.load(Manifest.for_destination(link.destination))

                self._transition(result, LinkState.DIFFING)
                differ = TreeDiffer(
                    link.source,
                    manifest,
                    follow_symlinks=self.config.follow_symlinks,
                    full_hash=self.config.full_hash,
                    exclude=[link.destination],
                )
                entries = list(differ.diff())
                result.errors.extend(differ.errors)

                if dry_run:
                    self._report_dry_run(result, entries)
                    self._transition(result, LinkState.DONE)
                    return result

                version = manifest.next_version()
                self._transition(result, LinkState.MATERIALIZING)
                materializer = VersionMaterializer(link.source, link.destination)
                outcome = materializer.materialize(entries, version)
                result.errors.extend(outcome.errors)

                if outcome.attempted and not outcome.copied:
                    raise PartialFailure(
                        f"None of the {outcome.attempted} changed files of link '{link.name}' "
                        f"could be copied", outcome.errors
                    )

                self._transition(result, LinkState.PERSISTING)
                for record in outcome.records:
                    manifest.apply(record)
                manifest.add_version(VersionInfo(
                    id=version,
                    timestamp=datetime.now().isoformat(),
                    added=len(outcome.added),
                    modified=len(outcome.modified),
                    deleted=len(outcome.deleted),
                    unchanged=outcome.unchanged,
                    bytes_copied=outcome.bytes_copied,
                ))
                manifest.persist()

                result.version = version
                result.added = outcome.added
                result.modified = outcome.modified
                result.deleted = outcome.deleted
                result.unchanged = outcome.unchanged
                result.bytes_copied = outcome.bytes_copied
                self._transition(result, LinkState.DONE)

            if result.errors:
                logger.warning(f"Link '{link.name}' completed with {len(result.errors)} errors")
            logger.info(f"Version {result.version} of link '{link.name}' completed")
            return result
        except (BackupError, OSError) as e:
            result.failure = e
            self._transition(result, LinkState.FAILED)
            logger.error(f"Backup of link '{link.name}' failed: {str(e)}")
            return result

    def restore(self, link: Link, selector: VersionSelector = LATEST, target=None,
                overwrite: bool = True, dry_run: bool = False) -> RestoreResult:
        """
        Restore a version of a link.

        Args:
            link (Link): Link to restore
            selector: Version number, or LATEST for the most recent one
            target: Directory to restore into, defaults to the link's source
            overwrite (bool): Replace files already present at the target
            dry_run (bool): Only report what would be restored

        Returns:
            RestoreResult: Restored, skipped and failed paths

        Raises:
            ManifestMissing: If the link has never been backed up
            ManifestCorrupt: If the manifest cannot be read
            ManifestLocked: If another operation holds the link
            VersionNotFound: If the selected version does not exist
        """
        target = Path(target) if target is not None else link.source
        manifest_path = self._require_manifest(link)

        with ManifestLock(link.destination):
            manifest = Manifest.load(manifest_path, must_exist=True)
            engine = RestoreEngine(manifest, link.destination)
            result = engine.restore(target, selector, overwrite=overwrite,
                                    dry_run=dry_run, link=link)

        if result.errors:
            logger.warning(f"Restore of link '{link.name}' completed with {len(result.errors)} errors")
        return result

    def restore_all(self, links: Optional[Sequence[Link]] = None, selector: VersionSelector = LATEST,
                    overwrite: bool = True, dry_run: bool = False) -> List[RestoreResult]:
        """Restore several links to their sources; a failing link does not stop the others."""
        links = list(self.config.links if links is None else links)
        results = []
        for link in links:
            try:
                results.append(self.restore(link, selector, overwrite=overwrite, dry_run=dry_run))
            except (BackupError, OSError) as e:
                logger.error(f"Restore of link '{link.name}' failed: {str(e)}")
                results.append(RestoreResult(link=link, target=link.source, failure=e, dry_run=dry_run))
        return results

    def list_versions(self, link: Link) -> List[VersionInfo]:
        """
        List the completed versions of a link, oldest first.

        Raises:
            ManifestMissing: If the link has never been backed up
            ManifestCorrupt: If the manifest cannot be read
        """
        manifest = Manifest.load(Manifest.for_destination(link.destination), must_exist=True)
        versions = manifest.versions()
        logger.debug(f"Retrieved {len(versions)} versions for link '{link.name}'")
        return versions

    def check(self, link: Link) -> Tuple[bool, List[Dict[str, Any]]]:
        """
        Verify every stored copy referenced by a link's manifest.

        Each physical copy is re-fingerprinted and compared with the digest
        recorded when it was stored.

        Returns:
            Tuple[bool, List[Dict[str, Any]]]: A tuple containing:
                - A boolean indicating if all stored content matches its digest
                - A list of dictionaries describing missing or corrupted copies
                  (path, version, stored_hash, calculated_hash)

        Raises:
            ManifestMissing: If the link has never been backed up
            ManifestCorrupt: If the manifest cannot be read
            ManifestLocked: If another operation holds the link
        """
        logger.info(f"Starting integrity check of link '{link.name}'")
        manifest_path = self._require_manifest(link)

        corrupted = []
        checked = 0
        with ManifestLock(link.destination):
            manifest = Manifest.load(manifest_path, must_exist=True)
            engine = RestoreEngine(manifest, link.destination)
            for record in manifest.stored_records():
                stored = engine.stored_path(record)
                try:
                    calculated = hash_file_content(stored)
                except ReadFailure:
                    calculated = None
                checked += 1
                if calculated != record.digest:
                    corrupted.append({
                        'path': record.path,
                        'version': record.stored_version,
                        'stored_hash': record.digest,
                        'calculated_hash': calculated,
                    })

        if corrupted:
            logger.warning(f"Integrity check of link '{link.name}' failed. "
                           f"Found {len(corrupted)} corrupted items out of {checked}.")
            for item in corrupted:
                logger.debug(f"Corrupted copy of '{item['path']}' in version {item['version']}")
        else:
            logger.info(f"Integrity check of link '{link.name}' passed. {checked} copies are valid.")
        return not corrupted, corrupted

    @staticmethod
    def _require_manifest(link: Link) -> Path:
        manifest_path = Manifest.for_destination(link.destination)
        if not manifest_path.exists():
            raise ManifestMissing(f"Link '{link.name}' has no backup at '{link.destination}'")
        return manifest_path

    @staticmethod
    def _check_source(link: Link) -> None:
        if not link.source.exists():
            raise ReadFailure(link.source, "source directory does not exist")
        if not link.source.is_dir():
            raise ReadFailure(link.source, "source is not a directory")
        if not os.access(link.source, os.R_OK | os.X_OK):
            raise ReadFailure(link.source, "no permission to read source directory")

    @staticmethod
    def _transition(result: PerLinkResult, state: LinkState) -> None:
        logger.debug(f"Link '{result.link.name}': {result.state.value} -> {state.value}")
        result.state = state

    @staticmethod
    def _report_dry_run(result: PerLinkResult, entries) -> None:
        for entry in entries:
            if entry.kind is ChangeKind.ADDED:
                result.added.append(entry.path)
            elif entry.kind is ChangeKind.MODIFIED:
                result.modified.append(entry.path)
            elif entry.kind is ChangeKind.DELETED:
                result.deleted.append(entry.path)
            else:
                result.unchanged += 1
            if entry.kind is not ChangeKind.UNCHANGED:
                logger.info(f"Would record '{entry.path}' as {entry.kind.value}")
