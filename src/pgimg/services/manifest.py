"""Extension manifest loading and resolution.

Provides:
- Typed manifest entries parsed from extensions.manifest.json
- Filters for enabled, creatable and preload entries
- Dependency-respecting install order (tsort semantics)
- Integrity validation
"""

import json
import re
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from pgimg.core.exceptions import ManifestError


COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")
LIBRARY_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


class EntryKind(str, Enum):
    """What a manifest entry installs."""

    EXTENSION = "extension"
    BUILTIN = "builtin"
    TOOL = "tool"
    SCHEMA = "schema"


class SourceType(str, Enum):
    BUILTIN = "builtin"
    GIT = "git"
    GIT_REF = "git-ref"


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SourceSpec(_ManifestModel):
    """Where an entry's source comes from."""

    type: SourceType
    repository: Optional[str] = None
    tag: Optional[str] = None
    ref: Optional[str] = None
    commit: Optional[str] = None

    @property
    def pinned_commit(self) -> Optional[str]:
        """Commit hash the source is pinned to, if any."""
        if self.commit:
            return self.commit
        if self.type == SourceType.GIT_REF:
            return self.ref
        return None


class BuildSpec(_ManifestModel):
    type: str
    subdir: Optional[str] = None
    features: list[str] = Field(default_factory=list)
    no_default_features: bool = Field(False, alias="noDefaultFeatures")
    script: Optional[str] = None
    patches: list[str] = Field(default_factory=list)


class RuntimeSpec(_ManifestModel):
    """Runtime loading requirements."""

    shared_preload: bool = Field(False, alias="sharedPreload")
    default_enable: bool = Field(False, alias="defaultEnable")
    # No .control file; cannot be created with CREATE EXTENSION
    preload_only: bool = Field(False, alias="preloadOnly")
    # Library file name when it differs from the entry name
    preload_library_name: Optional[str] = Field(None, alias="preloadLibraryName")
    notes: list[str] = Field(default_factory=list)


class ManifestEntry(_ManifestModel):
    """A single extension, builtin or tool bundled with the image."""

    name: str
    display_name: Optional[str] = Field(None, alias="displayName")
    kind: EntryKind
    category: str = ""
    description: str = ""
    source: SourceSpec
    build: Optional[BuildSpec] = None
    runtime: RuntimeSpec = Field(default_factory=RuntimeSpec)
    dependencies: list[str] = Field(default_factory=list)
    apt_packages: list[str] = Field(default_factory=list, alias="aptPackages")
    notes: list[str] = Field(default_factory=list)
    enabled: bool = True
    disabled_reason: Optional[str] = Field(None, alias="disabledReason")

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def library(self) -> str:
        """Name to list in shared_preload_libraries."""
        return self.runtime.preload_library_name or self.name

    @property
    def creatable(self) -> bool:
        """Can this entry be installed with CREATE EXTENSION?"""
        return (
            self.enabled
            and self.kind in (EntryKind.EXTENSION, EntryKind.BUILTIN)
            and not self.runtime.preload_only
        )


class Manifest:
    """Ordered collection of manifest entries."""

    def __init__(
        self,
        entries: Iterable[ManifestEntry],
        generated_at: Optional[str] = None,
        path: Optional[Path] = None,
    ) -> None:
        self.entries = list(entries)
        self.generated_at = generated_at
        self.path = path

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @classmethod
    def from_data(cls, data: Any, path: Optional[Path] = None) -> "Manifest":
        """Build a manifest from parsed JSON.

        Accepts ``{"entries": [...]}`` or a bare list of entries.

        Raises:
            ManifestError: If the data does not describe valid entries
        """
        generated_at = None
        if isinstance(data, dict):
            generated_at = data.get("generatedAt")
            raw_entries = data.get("entries")
        else:
            raw_entries = data

        if not isinstance(raw_entries, list):
            raise ManifestError(
                f"Manifest has no entries list: {path or '<data>'}",
                hint='Expected {"entries": [...]} or a JSON array',
            )

        entries = []
        for index, raw in enumerate(raw_entries):
            try:
                entries.append(ManifestEntry.model_validate(raw))
            except PydanticValidationError as e:
                name = raw.get("name", f"#{index}") if isinstance(raw, dict) else f"#{index}"
                raise ManifestError(
                    f"Invalid manifest entry: {name}",
                    details=[err["msg"] + f" ({'.'.join(str(p) for p in err['loc'])})"
                             for err in e.errors()],
                ) from e

        return cls(entries, generated_at=generated_at, path=path)

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        """Load a manifest JSON file.

        Raises:
            ManifestError: If file is missing or not valid JSON
        """
        if not path.exists():
            raise ManifestError(
                f"Manifest not found: {path}",
                hint="Pass --manifest or set harness.manifest_path in pgimg.yaml",
            )
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ManifestError(
                f"Invalid JSON in manifest: {path}",
                details=[str(e)],
            ) from e
        return cls.from_data(data, path=path)

    def get(self, name: str) -> Optional[ManifestEntry]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def enabled_entries(self) -> list[ManifestEntry]:
        return [e for e in self.entries if e.enabled]

    def creatable_entries(self, include_builtin: bool = False) -> list[ManifestEntry]:
        """Enabled extensions that CREATE EXTENSION can install.

        Builtin contrib modules (pg_trgm, btree_gin, ...) are creatable too
        but only included on request.
        """
        kinds = (EntryKind.EXTENSION, EntryKind.BUILTIN) if include_builtin else (EntryKind.EXTENSION,)
        return [e for e in self.entries if e.creatable and e.kind in kinds]

    def preload_entries(self) -> list[ManifestEntry]:
        """Enabled entries that must be in shared_preload_libraries."""
        return [e for e in self.entries if e.enabled and e.runtime.shared_preload]

    def default_preload_libraries(self) -> list[str]:
        """Preload libraries the image loads by default."""
        return [e.library for e in self.preload_entries() if e.runtime.default_enable]

    def hook_entries(self) -> list[ManifestEntry]:
        """Enabled preload libraries that are off by default."""
        return [e for e in self.preload_entries() if not e.runtime.default_enable]

    def preload_libraries_for(self, entries: Iterable[ManifestEntry]) -> list[str]:
        """Default preload libraries plus any the given entries need."""
        libraries = self.default_preload_libraries()
        for entry in entries:
            if entry.runtime.shared_preload and entry.library not in libraries:
                libraries.append(entry.library)
        return libraries

    def install_order(
        self,
        entries: Optional[list[ManifestEntry]] = None,
    ) -> list[ManifestEntry]:
        """Order entries so every dependency comes before its dependents.

        Dependencies outside the selected entries are ignored. Entries that
        become ready at the same time keep their manifest order.

        Args:
            entries: Entries to order (default: enabled entries)

        Returns:
            Entries in install order

        Raises:
            ManifestError: If the dependency graph has a cycle
        """
        if entries is None:
            entries = self.enabled_entries()

        position = {e.name: i for i, e in enumerate(self.entries)}
        by_name = {e.name: e for e in entries}

        sorter: TopologicalSorter = TopologicalSorter()
        for entry in entries:
            deps = [d for d in entry.dependencies if d in by_name]
            sorter.add(entry.name, *deps)

        try:
            sorter.prepare()
        except CycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else []
            raise ManifestError(
                "Dependency cycle in manifest",
                details=[" -> ".join(cycle)] if cycle else None,
            ) from e

        ordered: list[ManifestEntry] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=lambda n: position.get(n, len(position)))
            for name in ready:
                ordered.append(by_name[name])
                sorter.done(name)
        return ordered

    def validate(self) -> list[str]:
        """Check manifest integrity.

        Returns:
            List of problems (empty when the manifest is consistent)
        """
        problems: list[str] = []
        names: set[str] = set()

        for entry in self.entries:
            if entry.name in names:
                problems.append(f"Duplicate entry name: {entry.name}")
            names.add(entry.name)

        for entry in self.entries:
            for dep in entry.dependencies:
                if dep not in names:
                    problems.append(f"{entry.name}: unknown dependency '{dep}'")
                elif entry.enabled and not self.get(dep).enabled:
                    problems.append(f"{entry.name}: depends on disabled entry '{dep}'")

            source = entry.source
            if source.type != SourceType.BUILTIN and not source.repository:
                problems.append(f"{entry.name}: {source.type.value} source has no repository")
            if source.type == SourceType.GIT and not (source.tag or source.commit):
                problems.append(f"{entry.name}: git source needs a tag or commit")
            if source.type == SourceType.GIT_REF:
                if not source.pinned_commit or not COMMIT_PATTERN.match(source.pinned_commit):
                    problems.append(
                        f"{entry.name}: git-ref source must be pinned to a 40-character commit"
                    )
            elif source.commit and not COMMIT_PATTERN.match(source.commit):
                problems.append(f"{entry.name}: commit is not a 40-character hash: {source.commit}")

            if not entry.enabled and not entry.disabled_reason:
                problems.append(f"{entry.name}: disabled without disabledReason")
            if entry.runtime.preload_only and not entry.runtime.shared_preload:
                problems.append(f"{entry.name}: preloadOnly requires sharedPreload")
            if entry.runtime.shared_preload and not LIBRARY_PATTERN.match(entry.library):
                problems.append(f"{entry.name}: invalid preload library name: {entry.library!r}")

        try:
            self.install_order(list({e.name: e for e in self.entries}.values()))
        except ManifestError as e:
            problems.append(e.message + (f": {e.details[0]}" if e.details else ""))

        return problems
