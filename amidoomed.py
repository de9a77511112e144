#!/usr/bin/env python3
"""am-i-doomed - Vulnerability scanner for Node.js projects.

This module discovers every npm package a project depends on and checks each
one against the OSV (Open Source Vulnerabilities) database, producing a
console, plain-text or JSON report.

Packages are gathered from two sources and reconciled into a single map keyed
by package name:

- the project lockfile (``npm-shrinkwrap.json`` or ``package-lock.json``), in
  both the flat ``packages`` schema (lockfile v2/v3) and the nested
  ``dependencies`` schema (lockfile v1)
- the installed ``node_modules`` tree, walked recursively (scoped packages,
  non-hoisted installs and embedded lockfiles included)

Lockfile entries always take precedence over installed copies, since the
lockfile pins the version the project actually resolves.

License:
    MIT License - See LICENSE file for details

Example:
    Basic usage from command line::

        $ am-i-doomed
        $ am-i-doomed ./my-project --json
        $ am-i-doomed ./my-project -o report.txt

    Programmatic usage::

        import asyncio
        from amidoomed import scan_package

        result = asyncio.run(scan_package("./my-project", silent=True))
        print(f"{result.vulnerable_packages} vulnerable packages")
"""
import argparse
import asyncio
import json
import math
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import aiofiles
import aiohttp
from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console
from rich.table import Table

__version__ = "1.0.0"

OSV_API_URL = "https://api.osv.dev/v1/querybatch"
OSV_BATCH_SIZE = 100
OSV_ECOSYSTEM = "npm"
OSV_VULNERABILITY_URL = "https://osv.dev/vulnerability/"
USER_AGENT = f"am-i-doomed/{__version__} (security-scanner)"

# npm gives the shrinkwrap precedence when both files exist
LOCKFILE_NAMES = ("npm-shrinkwrap.json", "package-lock.json")
NODE_MODULES = "node_modules"
MANIFEST_NAME = "package.json"

# SECURITY: Cap manifest size to avoid reading crafted multi-GB package.json files
MAX_MANIFEST_SIZE = 10 * 1024 * 1024


def sanitize_path_for_display(path: Path) -> str:
    """Sanitize file path for safe display in logs and output.

    Replaces user's home directory with ~ to prevent PII exposure.
    """
    path_obj = Path(path)
    try:
        return f"~/{path_obj.relative_to(Path.home()).as_posix()}"
    except (ValueError, RuntimeError):
        return str(path_obj)


def relative_display(path: Path, project_root: Path) -> str:
    """Return ``path`` relative to ``project_root`` with forward slashes."""
    try:
        return path.relative_to(project_root).as_posix()
    except ValueError:
        return path.as_posix()


class ScanError(Exception):
    """Base class for every error raised by the scanner."""


class SourceUnavailableError(ScanError):
    """A lockfile, manifest or directory is missing or cannot be read."""


class MalformedSourceError(ScanError):
    """A lockfile or manifest is not valid JSON or lacks required structure."""


class OSVTransportError(ScanError):
    """The OSV API answered with a non-success status."""


class FatalScanError(ScanError):
    """A scan could not produce any result at all."""


class PackageSource(Enum):
    """Where a package record was discovered.

    Values:
        LOCK_FILE: Read from the project lockfile (takes precedence)
        INSTALLED_TREE: Read from an installed copy under node_modules
    """
    LOCK_FILE = "package-lock"
    INSTALLED_TREE = "node_modules"


@dataclass
class PackageRecord:
    """A single npm package resolved for the scanned project.

    Attributes:
        name (str): Package name, possibly scoped (``@scope/name``). Nested
            lockfile v1 entries use a path-joined name (``express/body-parser``)
        version (str): Resolved version
        source (PackageSource): Which discovery pass produced the record
        provenance (str): Human-readable pointer to the file and location the
            record came from. Only used for reporting, never for identity
    """
    name: str
    version: str
    source: PackageSource
    provenance: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "version": self.version,
            "source": self.source.value,
            "provenance": self.provenance,
        }


@dataclass
class VulnerabilityRecord:
    """A vulnerability entry as returned by the OSV batch API.

    Attributes:
        id (str): OSV identifier (e.g. GHSA-xxxx-xxxx-xxxx)
        modified (Optional[datetime]): Last modification time, None if the
            API did not send a parseable timestamp
    """
    id: str
    modified: Optional[datetime] = None

    @classmethod
    def from_osv(cls, vuln: "OSVVulnModel") -> "VulnerabilityRecord":
        modified = None
        if vuln.modified:
            try:
                modified = datetime.fromisoformat(vuln.modified.replace("Z", "+00:00"))
            except ValueError:
                modified = None
        return cls(id=vuln.id, modified=modified)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "id": self.id,
            "modified": self.modified.isoformat() if self.modified else None,
        }


@dataclass
class VulnerabilityMatch:
    """A package together with every vulnerability reported for it.

    ``vulnerabilities`` keeps arrival order: initial batch results first, then
    each continuation page in the order it was received.
    """
    package: PackageRecord
    vulnerabilities: List[VulnerabilityRecord] = field(default_factory=list)


@dataclass
class ScanResult:
    """Outcome of scanning one project.

    Counts are derived from ``packages`` and ``vulnerabilities`` on access so
    they can never drift from the underlying collections.

    Attributes:
        packages (Dict[str, PackageRecord]): Discovered packages keyed by name
        vulnerabilities (List[VulnerabilityMatch]): Packages with at least one
            known vulnerability
    """
    packages: Dict[str, PackageRecord]
    vulnerabilities: List[VulnerabilityMatch]

    @property
    def total_packages(self) -> int:
        return len(self.packages)

    @property
    def vulnerable_packages(self) -> int:
        return len(self.vulnerabilities)

    @property
    def total_vulnerabilities(self) -> int:
        return sum(len(match.vulnerabilities) for match in self.vulnerabilities)

    @property
    def lock_file_packages(self) -> int:
        return sum(1 for p in self.packages.values() if p.source is PackageSource.LOCK_FILE)

    @property
    def installed_tree_packages(self) -> int:
        return sum(1 for p in self.packages.values() if p.source is PackageSource.INSTALLED_TREE)

    @property
    def is_vulnerable(self) -> bool:
        return bool(self.vulnerabilities)


# SECURITY: Pydantic models for validating OSV API responses
# Malformed payloads fail validation instead of crashing result processing
class OSVVulnModel(BaseModel):
    """Pydantic validator for a vulnerability entry in an OSV batch result.

    The batch endpoint only returns ``id`` and ``modified``; anything else is
    accepted and ignored.
    """
    model_config = ConfigDict(extra="allow")

    id: str
    modified: Optional[str] = None


class OSVResultModel(BaseModel):
    """Pydantic validator for one per-query result of an OSV batch response."""
    model_config = ConfigDict(extra="allow")

    vulns: List[OSVVulnModel] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class OSVBatchResponseModel(BaseModel):
    """Pydantic validator for a complete OSV ``/v1/querybatch`` response."""
    model_config = ConfigDict(extra="allow")

    results: List[OSVResultModel] = Field(default_factory=list)


async def load_json_file(path: Path, max_size: Optional[int] = None) -> Dict[str, Any]:
    """Read a UTF-8 JSON document whose root must be an object.

    Args:
        path: File to read
        max_size: Reject files larger than this many bytes

    Raises:
        SourceUnavailableError: If the file is missing or unreadable
        MalformedSourceError: If the file is oversized, not UTF-8, not JSON,
            or its root is not an object
    """
    try:
        if max_size is not None:
            size = path.stat().st_size
            if size > max_size:
                raise MalformedSourceError(f"{path.name} too large: {size} bytes")

        # utf-8-sig tolerates the BOM some Windows editors prepend
        async with aiofiles.open(path, "r", encoding="utf-8-sig") as f:
            content = await f.read()
    except FileNotFoundError as e:
        raise SourceUnavailableError(f"{path.name} not found") from e
    except OSError as e:
        raise SourceUnavailableError(f"{path.name} unreadable ({e.strerror or type(e).__name__})") from e
    except UnicodeDecodeError as e:
        raise MalformedSourceError(f"{path.name} is not valid UTF-8") from e

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedSourceError(f"{path.name} is not valid JSON ({e.msg})") from e
    except RecursionError as e:
        raise MalformedSourceError(f"{path.name} is nested too deeply") from e

    if not isinstance(data, dict):
        raise MalformedSourceError(f"{path.name} root must be an object")
    return data


def derive_name_from_lock_key(key: str) -> str:
    """Derive a package name from a lockfile v2/v3 ``packages`` key.

    The name is whatever follows the last ``node_modules`` segment: one
    segment for regular packages, two for scoped ones. Workspace keys
    (``packages/foo``) carry no ``node_modules`` segment and are named after
    their folder.

    Example:
        >>> derive_name_from_lock_key("node_modules/express/node_modules/@types/node")
        '@types/node'
        >>> derive_name_from_lock_key("packages/foo")
        'foo'
    """
    segments = key.split("/")
    last = max((i for i, segment in enumerate(segments) if segment == NODE_MODULES), default=-1)
    if last == -1:
        scoped = len(segments) > 1 and segments[-2].startswith("@")
        suffix = segments[-2:] if scoped else segments[-1:]
    else:
        suffix = segments[last + 1:]
    if not suffix:
        return ""
    if suffix[0].startswith("@") and len(suffix) > 1:
        return f"{suffix[0]}/{suffix[1]}"
    return suffix[0]


def parse_lockfile(data: Dict[str, Any], display_path: str,
                   source: PackageSource = PackageSource.LOCK_FILE) -> Dict[str, PackageRecord]:
    """Extract package records from a parsed lockfile.

    The flat ``packages`` map (lockfile v2/v3) is read first. When the same
    name is installed at several paths, the shallowest install path wins.
    The nested ``dependencies`` tree (lockfile v1, also embedded in v2) is read
    second, producing path-joined names for nested entries; it never replaces
    a name already captured, and within the tree the first occurrence wins.

    Args:
        data: Parsed lockfile content
        display_path: Lockfile path shown in provenance strings
        source: Source tag given to every record

    Returns:
        Records keyed by package name, in discovery order
    """
    records: Dict[str, PackageRecord] = {}
    depths: Dict[str, int] = {}

    packages = data.get("packages")
    if isinstance(packages, dict):
        for key, entry in packages.items():
            if key == "" or not isinstance(entry, dict):
                continue  # root project entry

            name = entry.get("name") or derive_name_from_lock_key(key)
            version = entry.get("version")
            if not isinstance(name, str) or not name or not isinstance(version, str) or not version:
                continue

            depth = key.split("/").count(NODE_MODULES)
            if name in records and depths[name] <= depth:
                continue

            records[name] = PackageRecord(
                name=name,
                version=version,
                source=source,
                provenance=f'{display_path} -> packages["{key}"]',
            )
            depths[name] = depth

    dependencies = data.get("dependencies")
    if isinstance(dependencies, dict):
        _collect_nested_dependencies(dependencies, f"{display_path} -> dependencies", source, records)

    return records


def _collect_nested_dependencies(dependencies: Dict[str, Any], trail: str,
                                 source: PackageSource, records: Dict[str, PackageRecord]):
    """Depth-first, document-order walk of a nested ``dependencies`` tree.

    Uses an explicit stack of (name prefix, trail, remaining entries) frames
    so arbitrarily deep lockfiles cannot exhaust the interpreter stack.
    """
    stack = [("", trail, iter(dependencies.items()))]
    while stack:
        prefix, frame_trail, entries = stack[-1]
        for dep_name, entry in entries:
            if not isinstance(entry, dict):
                continue

            full_name = f"{prefix}/{dep_name}" if prefix else dep_name
            entry_trail = f'{frame_trail}["{dep_name}"]'
            version = entry.get("version")

            if isinstance(version, str) and version and full_name not in records:
                records[full_name] = PackageRecord(
                    name=full_name,
                    version=version,
                    source=source,
                    provenance=entry_trail,
                )

            nested = entry.get("dependencies")
            if isinstance(nested, dict) and nested:
                stack.append((full_name, f"{entry_trail}.dependencies", iter(nested.items())))
                break
        else:
            stack.pop()


def find_lockfile(directory: Path) -> Optional[Path]:
    """Return the lockfile npm would use in ``directory``, if any.

    Raises:
        SourceUnavailableError: If ``directory`` cannot be inspected
    """
    for lockfile_name in LOCKFILE_NAMES:
        candidate = directory / lockfile_name
        try:
            if candidate.is_file():
                return candidate
        except OSError as e:
            raise SourceUnavailableError(
                f"cannot inspect {directory.name or directory} ({e.strerror or type(e).__name__})"
            ) from e
    return None


class PackageDiscovery:
    """Discovers the npm packages a project depends on.

    Runs two passes over a project directory:

    1. Lockfile pass: reads the project lockfile (both schema generations).
       Every name found here belongs to the lock-priority set.
    2. Installed-tree pass: walks ``node_modules`` recursively, reading each
       package's ``package.json`` and any lockfile embedded in a package.

    Tree records only fill in names the lockfile does not know about; lockfile
    records are re-applied last so they always win.

    Discovery never raises for bad input. Missing or malformed sources are
    skipped with a warning (suppressed in silent mode). All bookkeeping is
    local to one ``discover`` call, so an instance can be reused freely.

    Attributes:
        silent (bool): Suppress all console diagnostics
        console (Console): Rich console used for diagnostics

    Example:
        >>> discovery = PackageDiscovery(silent=True)
        >>> packages = asyncio.run(discovery.discover(Path("./my-project")))
        >>> packages["lodash"].source
        <PackageSource.LOCK_FILE: 'package-lock'>
    """

    def __init__(self, silent: bool = False, console: Optional[Console] = None):
        self.silent = silent
        self.console = console or Console()

    async def discover(self, project_root) -> Dict[str, PackageRecord]:
        """Discover every package of the project rooted at ``project_root``.

        Args:
            project_root: Project directory (str or Path)

        Returns:
            Package records keyed by name. Lockfile records come first, then
            packages only present in node_modules
        """
        root = Path(project_root)

        lock_records = await self._read_project_lockfile(root)
        lock_priority = set(lock_records)
        packages: Dict[str, PackageRecord] = dict(lock_records)

        tree_records = await self._read_installed_tree(root)
        if tree_records is not None:
            added = 0
            for name, record in tree_records.items():
                if name in lock_priority or name in packages:
                    continue
                packages[name] = record
                added += 1

            packages.update(lock_records)
            self._info(f"✅  Scanned node_modules (+{added} additional packages)")

        return packages

    async def _read_project_lockfile(self, root: Path) -> Dict[str, PackageRecord]:
        try:
            lockfile = find_lockfile(root)
        except SourceUnavailableError as e:
            self._warn(f"⚠️  Could not read package-lock.json: {e}")
            return {}

        if lockfile is None:
            self._warn(f"⚠️  Could not read package-lock.json: no lockfile in {sanitize_path_for_display(root)}")
            return {}

        records = await self._read_lockfile(lockfile, root, PackageSource.LOCK_FILE)
        if records is None:
            return {}

        self._info(f"✅  Read {lockfile.name} ({len(records)} packages)")
        return records

    async def _read_lockfile(self, lockfile: Path, root: Path,
                             source: PackageSource) -> Optional[Dict[str, PackageRecord]]:
        """Parse a lockfile; None (after a warning) if it cannot be used."""
        display = relative_display(lockfile, root)
        try:
            data = await load_json_file(lockfile)
        except ScanError as e:
            self._warn(f"⚠️  Could not read {display}: {e}")
            return None
        return parse_lockfile(data, display, source)

    async def _read_installed_tree(self, root: Path) -> Optional[Dict[str, PackageRecord]]:
        modules_dir = root / NODE_MODULES
        if not self._is_directory(modules_dir, root):
            self._warn(f"⚠️  Could not read node_modules: not found in {sanitize_path_for_display(root)}")
            return None

        found: Dict[str, PackageRecord] = {}
        visited: Set[Path] = set()
        await self._walk_modules_dir(modules_dir, root, visited, found)
        return found

    async def _walk_modules_dir(self, modules_dir: Path, root: Path,
                                visited: Set[Path], found: Dict[str, PackageRecord]):
        """Depth-first walk of one node_modules directory."""
        if not self._mark_visited(modules_dir, root, visited):
            return

        for entry in self._list_subdirectories(modules_dir, root):
            # .bin holds executable shims, other dot directories are caches
            if entry.name.startswith("."):
                continue

            if entry.name.startswith("@"):
                for scoped_entry in self._list_subdirectories(entry, root):
                    await self._visit_package(scoped_entry, root, visited, found)
            else:
                await self._visit_package(entry, root, visited, found)

    async def _visit_package(self, package_dir: Path, root: Path,
                             visited: Set[Path], found: Dict[str, PackageRecord]):
        if not self._mark_visited(package_dir, root, visited):
            return

        record = await self._read_manifest(package_dir, root)
        if record is not None:
            found.setdefault(record.name, record)

        try:
            embedded_lockfile = find_lockfile(package_dir)
        except SourceUnavailableError as e:
            self._warn(f"⚠️  Could not read {relative_display(package_dir, root)}: {e}")
            return

        if embedded_lockfile is not None:
            embedded = await self._read_lockfile(embedded_lockfile, root, PackageSource.INSTALLED_TREE) or {}
            for name, nested_record in embedded.items():
                found.setdefault(name, nested_record)

        nested_modules = package_dir / NODE_MODULES
        if self._is_directory(nested_modules, root):
            await self._walk_modules_dir(nested_modules, root, visited, found)

    async def _read_manifest(self, package_dir: Path, root: Path) -> Optional[PackageRecord]:
        """Parse a package.json into a record, or None if it is unusable."""
        manifest = package_dir / MANIFEST_NAME
        display = relative_display(manifest, root)

        try:
            data = await load_json_file(manifest, max_size=MAX_MANIFEST_SIZE)
        except SourceUnavailableError:
            return None  # not a package directory
        except MalformedSourceError as e:
            self._warn(f"⚠️  Skipping malformed {display}: {e}")
            return None

        name = data.get("name")
        version = data.get("version")
        if isinstance(name, str) and name and isinstance(version, str) and version:
            return PackageRecord(name=name, version=version,
                                 source=PackageSource.INSTALLED_TREE, provenance=display)
        return None

    def _mark_visited(self, directory: Path, root: Path, visited: Set[Path]) -> bool:
        """Record the canonical path of ``directory``; False if already seen."""
        try:
            canonical = directory.resolve()
        except (OSError, RuntimeError) as e:
            self._warn(f"⚠️  Could not resolve {relative_display(directory, root)}: {e}")
            return False

        if canonical in visited:
            self._info(f"[dim]↩️  Skipping already visited {relative_display(directory, root)}[/dim]")
            return False
        visited.add(canonical)
        return True

    def _list_subdirectories(self, directory: Path, root: Path) -> List[Path]:
        try:
            children = sorted(directory.iterdir())
        except OSError as e:
            self._warn(f"⚠️  Could not list {relative_display(directory, root)}: {e.strerror or e}")
            return []
        return [child for child in children if self._is_directory(child, root)]

    def _is_directory(self, path: Path, root: Path) -> bool:
        """``Path.is_dir`` that warns instead of raising on permission errors."""
        try:
            return path.is_dir()
        except OSError as e:
            self._warn(f"⚠️  Could not inspect {relative_display(path, root)}: {e.strerror or e}")
            return False

    def _info(self, message: str):
        if not self.silent:
            self.console.print(message)

    def _warn(self, message: str):
        if not self.silent:
            self.console.print(f"[yellow]{message}[/yellow]")


# A query still waiting for its next page: (package, continuation token)
PendingPage = Tuple[PackageRecord, str]


class OSVClient:
    """Client for the OSV ``/v1/querybatch`` endpoint.

    Packages are sent in batches of up to 100 queries, one request at a time.
    Any query whose result carries a ``next_page_token`` is followed up in
    pagination rounds: each round re-queries only the packages that still
    have a token, until no result carries one.

    A failed request (non-200 status, network error, malformed payload) loses
    only that batch or round; ``query`` never raises and returns whatever was
    accumulated.

    Attributes:
        silent (bool): Suppress all console diagnostics
        session (Optional[aiohttp.ClientSession]): HTTP session. When None a
            session is opened for the duration of each ``query`` call or
            ``async with`` block
        api_url (str): Batch query endpoint
        batch_size (int): Maximum number of queries per request

    Example:
        >>> async def check(packages):
        ...     async with OSVClient() as client:
        ...         return await client.query(packages)
    """

    def __init__(self, silent: bool = False, session: Optional[aiohttp.ClientSession] = None,
                 console: Optional[Console] = None, api_url: str = OSV_API_URL,
                 batch_size: int = OSV_BATCH_SIZE):
        self.silent = silent
        self.session = session
        self.console = console or Console()
        self.api_url = api_url
        self.batch_size = batch_size
        self._owns_session = False

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    async def query(self, packages: Sequence[PackageRecord]) -> List[VulnerabilityMatch]:
        """Look up known vulnerabilities for ``packages``.

        Args:
            packages: Packages to check, in the order they should be queried

        Returns:
            One match per package with at least one vulnerability, in the
            order the first vulnerability for that package arrived
        """
        packages = list(packages)
        if not packages:
            return []

        if self.session is None:
            async with self:
                return await self._query_batches(packages)
        return await self._query_batches(packages)

    async def _query_batches(self, packages: List[PackageRecord]) -> List[VulnerabilityMatch]:
        matches: Dict[str, VulnerabilityMatch] = {}
        total_batches = math.ceil(len(packages) / self.batch_size)

        self._info("🌐 Querying OSV database for vulnerabilities...\n")

        for batch_number, start in enumerate(range(0, len(packages), self.batch_size), start=1):
            batch = packages[start:start + self.batch_size]
            self._info(f"  Batch {batch_number}/{total_batches}: Checking {len(batch)} packages...")

            try:
                results = await self._post_queries([self._build_query(package) for package in batch])
            except Exception as e:
                self._error(f"❌ Error querying batch {batch_number}: {e}")
                continue

            pending = self._absorb_round(batch, results, matches)
            await self._paginate(batch_number, pending, matches)

        return list(matches.values())

    async def _paginate(self, batch_number: int, pending: List[PendingPage],
                        matches: Dict[str, VulnerabilityMatch]):
        """Follow continuation tokens until no query in a round returns one."""
        round_number = 0
        while pending:
            round_number += 1
            queries = [self._build_query(package, token) for package, token in pending]

            try:
                results = await self._post_queries(queries)
            except Exception as e:
                self._error(f"Error in pagination round {round_number} of batch {batch_number}: {e}")
                return

            pending = self._absorb_round([package for package, _ in pending], results, matches)

    def _absorb_round(self, packages: List[PackageRecord], results: List[OSVResultModel],
                      matches: Dict[str, VulnerabilityMatch]) -> List[PendingPage]:
        """Merge one round of results into ``matches``; return the next round's queries."""
        if len(results) != len(packages):
            self._error(f"⚠️  OSV returned {len(results)} results for {len(packages)} queries")

        next_pending: List[PendingPage] = []
        for package, result in zip(packages, results):
            if result.vulns:
                match = matches.get(package.name)
                if match is None:
                    match = matches[package.name] = VulnerabilityMatch(package=package)
                match.vulnerabilities.extend(VulnerabilityRecord.from_osv(vuln) for vuln in result.vulns)

            if result.next_page_token:
                next_pending.append((package, result.next_page_token))
        return next_pending

    async def _post_queries(self, queries: List[Dict[str, Any]]) -> List[OSVResultModel]:
        async with self.session.post(
            self.api_url,
            json={"queries": queries},
            headers={"Content-Type": "application/json"},
        ) as response:
            if response.status != 200:
                raise OSVTransportError(f"OSV API error: {response.status} {response.reason or ''}".rstrip())
            payload = await response.json()

        return OSVBatchResponseModel.model_validate(payload).results

    @staticmethod
    def _build_query(package: PackageRecord, page_token: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "package": {"name": package.name, "ecosystem": OSV_ECOSYSTEM},
            "version": package.version,
        }
        if page_token:
            query["page_token"] = page_token
        return query

    def _info(self, message: str):
        if not self.silent:
            self.console.print(message)

    def _error(self, message: str):
        if not self.silent:
            self.console.print(f"[red]{message}[/red]")


class Reporter:
    """Renders scan results as console output, plain text or JSON.

    Attributes:
        silent (bool): Suppress console output (files are still written)
        console (Console): Console for the human-readable report and notices
        output (Console): Console the JSON report is printed to (stdout)

    Example:
        >>> reporter = Reporter()
        >>> reporter.print_console_report(result)
        >>> await reporter.save_report(result, Path("report.json"))
    """

    MAX_LISTED_VULNERABILITIES = 5

    def __init__(self, silent: bool = False, console: Optional[Console] = None,
                 output: Optional[Console] = None):
        self.silent = silent
        self.console = console or Console()
        self.output = output or Console(soft_wrap=True)

    def generate_json_report(self, result: ScanResult) -> str:
        """Generate JSON format report."""
        report_data = {
            "summary": {
                "totalPackages": result.total_packages,
                "vulnerablePackages": result.vulnerable_packages,
                "totalVulnerabilities": result.total_vulnerabilities,
                "isVulnerable": result.is_vulnerable,
            },
            "packages": [package.to_dict() for package in result.packages.values()],
            "vulnerabilities": [
                {
                    "package": match.package.to_dict(),
                    "vulnerabilityCount": len(match.vulnerabilities),
                    "vulnerabilities": [vuln.to_dict() for vuln in match.vulnerabilities],
                }
                for match in result.vulnerabilities
            ],
            "scannedAt": datetime.now(timezone.utc).isoformat(),
            "dataSource": "OSV (Open Source Vulnerabilities)",
        }
        return json.dumps(report_data, indent=2)

    def generate_text_report(self, result: ScanResult) -> str:
        """Generate a plain-text report with the same content as the console report."""
        lines = ["", "=" * 60, "🚨 SECURITY SCAN REPORT", "=" * 60]

        if not result.is_vulnerable:
            lines.append("\n🎉 Great news! No known vulnerabilities found in your packages.")
            lines.append(f"   Scanned {result.total_packages} packages total.")
        else:
            lines.append(f"\n⚠️  Found vulnerabilities in {result.vulnerable_packages} packages:")
            lines.append(f"   (out of {result.total_packages} total packages scanned)\n")

            for match in self._most_vulnerable_first(result):
                package = match.package
                lines.append(f"📦 {package.name}@{package.version}")
                lines.append(f"   Source: {package.source.value}")
                lines.append(f"   Found in: {package.provenance}")
                lines.append(f"   Vulnerabilities: {len(match.vulnerabilities)}")
                lines.extend(f"   - {entry}" for entry in self._vulnerability_entries(match))
                lines.append(f"   🔗 Details: {OSV_VULNERABILITY_URL}{match.vulnerabilities[0].id}")
                lines.append("")

        lines.extend(self._summary_lines(result))
        lines.extend(self._disclaimer_lines())
        lines.append("\n" + self._conclusion(result))
        return "\n".join(lines)

    def print_console_report(self, result: ScanResult):
        """Print the report to the console using rich formatting."""
        if self.silent:
            return

        console = self.console
        console.print("\n" + "=" * 60)
        console.print("[bold]🚨 SECURITY SCAN REPORT[/bold]")
        console.print("=" * 60)

        if not result.is_vulnerable:
            console.print("\n[green]🎉 Great news! No known vulnerabilities found in your packages.[/green]")
            console.print(f"   Scanned {result.total_packages} packages total.")
        else:
            console.print(f"\n[bold red]⚠️  Found vulnerabilities in {result.vulnerable_packages} packages[/bold red]")
            console.print(f"   (out of {result.total_packages} total packages scanned)\n")

            table = Table(title="📦 Vulnerable Packages")
            table.add_column("Package", style="cyan")
            table.add_column("Version", style="magenta")
            table.add_column("Source", style="dim")
            table.add_column("Count", justify="right", style="red")
            table.add_column("Vulnerabilities")
            table.add_column("Details", style="blue")

            for match in self._most_vulnerable_first(result):
                package = match.package
                first_id = match.vulnerabilities[0].id
                table.add_row(
                    package.name,
                    package.version,
                    package.source.value,
                    str(len(match.vulnerabilities)),
                    "\n".join(self._vulnerability_entries(match)),
                    f"[link={OSV_VULNERABILITY_URL}{first_id}]{OSV_VULNERABILITY_URL}{first_id}[/link]",
                )
            console.print(table)

        for line in self._summary_lines(result):
            console.print(line)
        for line in self._disclaimer_lines():
            console.print(line, style="dim")

        style = "bold red" if result.is_vulnerable else "bold green"
        console.print("\n" + self._conclusion(result), style=style)

    def print_json_report(self, result: ScanResult):
        """Print the JSON report unstyled, so it can be piped."""
        if self.silent:
            return
        self.output.print(self.generate_json_report(result), markup=False, highlight=False, emoji=False)

    async def save_report(self, result: ScanResult, output_path: Path, as_json: bool = False) -> bool:
        """Write the report to ``output_path``.

        JSON is written when ``as_json`` is set or the file name ends with
        ``.json``; otherwise the plain-text report. Write failures are
        reported but never raised.

        Returns:
            True if the file was written
        """
        output_path = Path(output_path)
        write_json = as_json or output_path.suffix.lower() == ".json"
        content = self.generate_json_report(result) if write_json else self.generate_text_report(result)

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(output_path, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            if not self.silent:
                self.console.print(f"[red]Failed to write report to disk: {e}[/red]")
            return False

        if not self.silent:
            self.console.print(f"\n📄 Saved report to: {sanitize_path_for_display(output_path)}")
        return True

    @staticmethod
    def _most_vulnerable_first(result: ScanResult) -> List[VulnerabilityMatch]:
        return sorted(result.vulnerabilities, key=lambda match: len(match.vulnerabilities), reverse=True)

    def _vulnerability_entries(self, match: VulnerabilityMatch) -> List[str]:
        entries = []
        for vuln in match.vulnerabilities[:self.MAX_LISTED_VULNERABILITIES]:
            modified = vuln.modified.date().isoformat() if vuln.modified else "unknown"
            entries.append(f"{vuln.id} (modified: {modified})")

        remaining = len(match.vulnerabilities) - self.MAX_LISTED_VULNERABILITIES
        if remaining > 0:
            entries.append(f"... and {remaining} more")
        return entries

    @staticmethod
    def _summary_lines(result: ScanResult) -> List[str]:
        return [
            "📊 SCAN SUMMARY",
            f"   Total packages scanned: {result.total_packages}",
            f"   From lockfile: {result.lock_file_packages}",
            f"   From node_modules: {result.installed_tree_packages}",
            f"   Vulnerable packages: {result.vulnerable_packages}",
            f"   Total vulnerabilities: {result.total_vulnerabilities}",
        ]

    @staticmethod
    def _disclaimer_lines() -> List[str]:
        return [
            "\n" + "=" * 60,
            "ℹ️  DISCLAIMER",
            "=" * 60,
            "This scan uses data from OSV (Open Source Vulnerabilities).",
            "We take no responsibility for the accuracy or completeness",
            "of these results. Always verify findings independently.",
            "For more info: https://osv.dev/",
            "=" * 60,
        ]

    @staticmethod
    def _conclusion(result: ScanResult) -> str:
        if result.is_vulnerable:
            return "💀 You might be doomed! Consider updating vulnerable packages."
        return "✅  You are NOT doomed today! Stay vigilant."


class Scanner:
    """Scans a project: discovery, then OSV lookup, then reporting.

    Attributes:
        silent (bool): Suppress all console output
        console (Console): Console for progress and the human-readable report
        discovery (PackageDiscovery): Package discovery component
        client (OSVClient): OSV batch query client
        reporter (Reporter): Report renderer

    Example:
        >>> scanner = Scanner()
        >>> result = asyncio.run(scanner.scan_and_report("./my-project"))
        >>> sys.exit(1 if result.is_vulnerable else 0)
    """

    def __init__(self, silent: bool = False, console: Optional[Console] = None,
                 discovery: Optional[PackageDiscovery] = None, client: Optional[OSVClient] = None,
                 reporter: Optional[Reporter] = None):
        self.silent = silent
        self.console = console or Console()
        self.discovery = discovery or PackageDiscovery(silent=silent, console=self.console)
        self.client = client or OSVClient(silent=silent, console=self.console)
        self.reporter = reporter or Reporter(silent=silent, console=self.console)

    async def scan(self, project_path=None) -> ScanResult:
        """Discover the project's packages and look up their vulnerabilities.

        Args:
            project_path: Project directory, defaults to the current directory

        Raises:
            FatalScanError: If something unexpected escapes discovery or lookup
        """
        project_root = Path(project_path) if project_path else Path.cwd()

        if not self.silent:
            self.console.print("🔍 Scanning project for installed packages...\n")

        try:
            packages = await self.discovery.discover(project_root)
            if not self.silent:
                self.console.print(f"\n📦 Found {len(packages)} unique packages\n")
            vulnerabilities = await self.client.query(list(packages.values()))
        except Exception as e:
            if not self.silent:
                self.console.print(f"[red]❌ Error during scan: {e}[/red]")
            raise FatalScanError(f"Scan of {sanitize_path_for_display(project_root)} failed: {e}") from e

        return ScanResult(packages=packages, vulnerabilities=vulnerabilities)

    async def scan_and_report(self, project_path=None, json_output: bool = False,
                              output_path: Optional[Path] = None) -> ScanResult:
        """Scan, print the report, and optionally save it to ``output_path``."""
        result = await self.scan(project_path)

        if json_output:
            self.reporter.print_json_report(result)
        else:
            self.reporter.print_console_report(result)

        if output_path:
            await self.reporter.save_report(result, Path(output_path), as_json=json_output)

        return result


async def scan_package(project_path=None, silent: bool = False) -> ScanResult:
    """Scan a project and return the result without printing a report."""
    return await Scanner(silent=silent).scan(project_path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="am-i-doomed",
        description="Scans your Node.js project for known security vulnerabilities "
                    "using the OSV (Open Source Vulnerabilities) database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                    # Scan current directory
  %(prog)s ./my-project       # Scan specific directory
  %(prog)s --json             # Output JSON results
  %(prog)s --silent           # Silent mode (exit codes only)
  %(prog)s -o report.json     # Save the report to a file

Exit Codes:
  0    No vulnerabilities found (you are NOT doomed)
  1    Vulnerabilities found (you might be doomed) or scan failed

Data Source: https://osv.dev/
        """
    )

    parser.add_argument('project_path', nargs='?', type=Path, default=None,
                        help='Path to project directory (default: current directory)')
    parser.add_argument('-j', '--json', action='store_true',
                        help='Output results in JSON format')
    parser.add_argument('-s', '--silent', action='store_true',
                        help='Suppress console output (useful for programmatic use)')
    parser.add_argument('-o', '--output', type=Path, metavar='FILE',
                        help='Save the generated report to FILE (use .json for JSON output)')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point - command-line interface.

    Returns:
        Process exit code: 0 when no vulnerability was found, 1 when at least
        one was found or the scan failed
    """
    args = build_parser().parse_args(argv)

    # Keep stdout clean for JSON consumers
    console = Console(stderr=args.json)

    if not args.silent:
        console.print("[bold bright_red]💀 AM I DOOMED? - Security Vulnerability Scanner[/bold bright_red]")
        console.print("[dim]" + "=" * 48 + "[/dim]\n")

    scanner = Scanner(silent=args.silent, console=console)
    try:
        result = await scanner.scan_and_report(
            args.project_path,
            json_output=args.json,
            output_path=args.output,
        )
    except FatalScanError as e:
        if not args.silent:
            console.print(f"[red]💀 Fatal error: {e}[/red]")
        return 1

    return 1 if result.is_vulnerable else 0


def run():
    """Console script entry point."""
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        Console(stderr=True).print("\n[yellow]Scan interrupted by user[/yellow]")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
