from __future__ import annotations

import argparse
import json
import logging
import os
import posixpath
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, List, Dict, Any, Callable, Iterable, Iterator, TextIO
from urllib.parse import unquote

import frontmatter  # pip install python-frontmatter
import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_serializer, field_validator, model_validator
from tqdm import tqdm


# Enums for configuration options
class ConflictPolicy(Enum):
    """Strategy for handling a destination file that already exists."""
    RENAME = "rename"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class FileKind(Enum):
    """What a transferred file is, decided from its extension."""
    NOTE = "note"
    ATTACHMENT = "attachment"


class TransferStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ErrorKind(Enum):
    CONFIGURATION = "configuration"
    FILESYSTEM = "filesystem"


class TransferWarning(Enum):
    """Partial-success conditions attached to a successful transfer."""
    METADATA_NOT_PRESERVED = "metadata-not-preserved"
    ORIGINAL_NOT_DELETED = "original-not-deleted"


class AttachmentStatus(Enum):
    COPIED = "copied"
    MISSING = "missing"
    FAILED = "failed"


# Errors
class VaultTransferError(Exception):
    """Base class for all vault transfer errors."""


class ConfigurationError(VaultTransferError):
    """Settings are missing, invalid, or no destination vault is registered."""


class DestinationChoiceRequired(VaultTransferError):
    """Several destination vaults are registered and none was chosen."""

    def __init__(self, choices: List[Path]):
        super().__init__(f"{len(choices)} destination vaults registered; choose one")
        self.choices = choices


class DuplicateVaultError(VaultTransferError, ValueError):
    """The vault path is already registered."""


class FilesystemError(VaultTransferError):
    """An I/O operation on a vault file or folder failed."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


def _fs_error(action: str, path: Path, exc: OSError) -> FilesystemError:
    reason = exc.strerror or str(exc)
    return FilesystemError(f"Could not {action} {path}: {reason}", path=path)


# Logging configuration
logger = logging.getLogger(__name__)


def setup_logging(verbose: int = 0, quiet: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure logging based on verbosity settings.

    Args:
        verbose: Verbosity level (0=WARNING, 1=INFO, 2+=DEBUG)
        quiet: If True, only show ERROR messages
        log_file: Optional path to log file (always logs at DEBUG level)
    """
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        fh.setFormatter(formatter)
        root = logging.getLogger()
        root.addHandler(fh)
        root.setLevel(logging.DEBUG)
        for handler in root.handlers:
            if handler is not fh:
                handler.setLevel(level)
        logger.info(f"Logging to file: {log_file}")


# Settings
class VaultRegistry:
    """Ordered set of destination vault roots.

    Insertion order is display order. Paths are normalized to absolute paths
    before comparison, so ``~/vault`` and ``/home/me/vault`` are the same vault.

    Examples:
        >>> registry = VaultRegistry(["/vaults/work"])
        >>> registry.add("/vaults/home")
        PosixPath('/vaults/home')
        >>> registry.add("/vaults/work")
        Traceback (most recent call last):
        ...
        DuplicateVaultError: Vault already registered: /vaults/work
    """

    def __init__(self, paths: Optional[Iterable[str | Path]] = None):
        self._paths: List[Path] = []
        for path in paths or []:
            self.add(path)

    @staticmethod
    def normalize(path: str | Path) -> Path:
        return Path(os.path.abspath(os.path.expanduser(str(path))))

    def add(self, path: str | Path) -> Path:
        normalized = self.normalize(path)
        if normalized in self._paths:
            raise DuplicateVaultError(f"Vault already registered: {normalized}")
        self._paths.append(normalized)
        return normalized

    def remove(self, path: str | Path) -> Path:
        normalized = self.normalize(path)
        try:
            self._paths.remove(normalized)
        except ValueError:
            raise ConfigurationError(f"Vault not registered: {normalized}") from None
        return normalized

    def to_list(self) -> List[str]:
        return [str(p) for p in self._paths]

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        return self.normalize(path) in self._paths

    def __iter__(self) -> Iterator[Path]:
        return iter(list(self._paths))

    def __len__(self) -> int:
        return len(self._paths)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VaultRegistry):
            return NotImplemented
        return self._paths == other._paths

    def __repr__(self) -> str:
        return f"VaultRegistry({self.to_list()!r})"


class Settings(BaseModel):
    """User configuration passed explicitly to every transfer.

    Missing keys take the field defaults, so a partial settings file is
    merged over the defaults. Unknown keys are ignored.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True, extra="ignore")

    target_vault_paths: VaultRegistry = Field(default_factory=VaultRegistry)
    include_attachments: StrictBool = True
    preserve_metadata: StrictBool = True
    handle_conflicts: ConflictPolicy = ConflictPolicy.RENAME
    delete_after_transfer: StrictBool = False
    include_property_attachments: StrictBool = True

    @model_validator(mode="before")
    @classmethod
    def log_unknown_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for key in data:
                if key not in cls.model_fields:
                    logger.debug(f"Ignoring unknown setting: {key}")
        return data

    @field_validator("target_vault_paths", mode="before")
    @classmethod
    def build_registry(cls, value: Any) -> VaultRegistry:
        if isinstance(value, VaultRegistry):
            return value
        if not isinstance(value, list) or not all(isinstance(p, (str, Path)) for p in value):
            raise ValueError("must be a list of paths")
        registry = VaultRegistry()
        for raw in value:
            try:
                registry.add(raw)
            except DuplicateVaultError:
                logger.warning(f"Ignoring duplicate vault in settings: {raw}")
        return registry

    @field_serializer("target_vault_paths")
    def serialize_target_vault_paths(self, value: VaultRegistry) -> List[str]:
        return value.to_list()


DEFAULT_SETTINGS: Dict[str, Any] = Settings().model_dump(mode="json")


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
        for error in exc.errors()
    )


def settings_from_dict(data: Any) -> Settings:
    """Build Settings from stored data.

    Args:
        data: Mapping loaded from the settings file

    Returns:
        Settings with defaults applied for every missing key

    Raises:
        ConfigurationError: If a value has the wrong type or an unknown policy
    """
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {_validation_message(exc)}") from exc


def settings_to_dict(settings: Settings) -> Dict[str, Any]:
    return settings.model_dump(mode="json")


TRUE_WORDS = {"true", "yes", "on", "1"}
FALSE_WORDS = {"false", "no", "off", "0"}


def set_setting(settings: Settings, key: str, raw_value: str) -> None:
    """Change one scalar setting from its command-line spelling.

    Args:
        settings: Settings to mutate
        key: Setting name; dashes are accepted in place of underscores
        raw_value: "true"/"false" style words for flags, a policy name for
            handle_conflicts

    Raises:
        ConfigurationError: For unknown keys or values that do not validate

    Examples:
        >>> set_setting(settings, "handle-conflicts", "skip")
        >>> set_setting(settings, "preserve_metadata", "off")
    """
    name = key.replace("-", "_")
    if name == "target_vault_paths":
        raise ConfigurationError("Use the 'vaults' command to change destination vaults")
    if name not in Settings.model_fields:
        raise ConfigurationError(f"Unknown setting: {key}")

    word = raw_value.strip().lower()
    value: Any = word
    if word in TRUE_WORDS:
        value = True
    elif word in FALSE_WORDS:
        value = False
    try:
        setattr(settings, name, value)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid value {raw_value!r} for {name}: {_validation_message(exc)}") from exc


def default_config_path() -> Path:
    env = os.environ.get("VAULT_TRANSFER_CONFIG")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".config" / "vault-transfer" / "settings.json"


class SettingsStore:
    """Loads and saves Settings as a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Settings:
        if not self.path.exists():
            logger.debug(f"No settings file at {self.path}, using defaults")
            return settings_from_dict({})
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Settings file {self.path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise ConfigurationError(f"Could not read settings file {self.path}: {exc}") from exc
        return settings_from_dict(data)

    def save(self, settings: Settings) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(settings_to_dict(settings), indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
        except OSError as exc:
            raise ConfigurationError(f"Could not save settings to {self.path}: {exc}") from exc
        logger.debug(f"Saved settings to {self.path}")


# Source vault
class SourceVault:
    """Local vault the files are transferred from.

    All paths handed to and returned by this class are vault-relative with
    forward slashes, e.g. ``notes/a.md``.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, rel_path: str) -> Path:
        return self.root.joinpath(*PurePosixPath(rel_path).parts)

    def exists(self, rel_path: str) -> bool:
        return self.path_for(rel_path).is_file()

    def read_bytes(self, rel_path: str) -> bytes:
        path = self.path_for(rel_path)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise _fs_error("read", path, exc) from exc

    def read_text(self, rel_path: str) -> str:
        return self.read_bytes(rel_path).decode("utf-8", errors="replace")

    def delete(self, rel_path: str) -> None:
        """Delete a file. Deleting a file that is already gone is a no-op."""
        path = self.path_for(rel_path)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise _fs_error("delete", path, exc) from exc

    def relative_path(self, path: str | Path) -> str:
        """Convert a user-supplied path to a vault-relative one.

        Relative paths that exist under the vault root are taken as
        vault-relative. Other relative paths are resolved against the working
        directory when that lands inside the vault, and are otherwise kept
        as vault-relative. Absolute paths must lie inside the vault.

        Raises:
            ConfigurationError: If the path is outside the vault
        """
        candidate = Path(path)
        vault_root = self.root.resolve()
        if not candidate.is_absolute():
            if ".." not in candidate.parts and (self.root / candidate).is_file():
                return candidate.as_posix()
            try:
                return (Path.cwd() / candidate).resolve().relative_to(vault_root).as_posix()
            except ValueError:
                if ".." in candidate.parts:
                    raise ConfigurationError(f"{path} is not inside the source vault {self.root}") from None
                return candidate.as_posix()
        try:
            return candidate.resolve().relative_to(vault_root).as_posix()
        except ValueError:
            raise ConfigurationError(f"{path} is not inside the source vault {self.root}") from None


NOTE_EXTENSIONS = {".md"}


def file_kind(path: str) -> FileKind:
    """Classify a vault path as a note or an attachment by its extension.

    Examples:
        >>> file_kind("notes/a.md")
        <FileKind.NOTE: 'note'>
        >>> file_kind("assets/pic.png")
        <FileKind.ATTACHMENT: 'attachment'>
    """
    if PurePosixPath(path).suffix.lower() in NOTE_EXTENSIONS:
        return FileKind.NOTE
    return FileKind.ATTACHMENT


# Path resolution
def resolve_destination_path(destination_root: str | Path, vault_relative_path: str) -> Path:
    """Map a vault-relative path into the destination vault.

    Creates every missing parent folder of the returned path.

    Args:
        destination_root: Absolute root of the destination vault
        vault_relative_path: Path relative to the vault root (e.g. "notes/a.md")

    Returns:
        Absolute destination path

    Raises:
        FilesystemError: If the relative path is absolute or climbs out of the
            vault, or if a parent folder cannot be created

    Examples:
        >>> resolve_destination_path(Path("/vaults/work"), "notes/a.md")
        PosixPath('/vaults/work/notes/a.md')
    """
    rel = PurePosixPath(vault_relative_path)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise FilesystemError(
            f"Invalid vault-relative path: {vault_relative_path!r}",
            path=Path(vault_relative_path),
        )
    target = Path(destination_root).joinpath(*rel.parts)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise _fs_error("create folder", target.parent, exc) from exc
    return target


# Conflict handling
def resolve_conflict(candidate_path: Path, file_name: str, policy: ConflictPolicy) -> Optional[Path]:
    """Decide where a file goes when its destination already exists.

    Args:
        candidate_path: Destination path that already exists
        file_name: Name of the file being transferred
        policy: Configured conflict policy

    Returns:
        candidate_path for OVERWRITE, None for SKIP, and for RENAME the first
        "name (n).ext" sibling that does not exist yet

    Examples:
        >>> resolve_conflict(Path("/v/notes/a.md"), "a.md", ConflictPolicy.RENAME)
        PosixPath('/v/notes/a (1).md')
    """
    if policy is ConflictPolicy.OVERWRITE:
        return candidate_path
    if policy is ConflictPolicy.SKIP:
        return None

    name = Path(file_name)
    stem, ext = name.stem, name.suffix
    directory = candidate_path.parent
    counter = 1
    while True:
        new_path = directory / f"{stem} ({counter}){ext}"
        if not new_path.exists():
            logger.debug(f"Renamed {file_name} to {new_path.name} to avoid a conflict")
            return new_path
        counter += 1


# Attachment extraction
# ![[target]] or ![alt](target)
EMBED_RE = re.compile(
    r'!\[\[(?P<wiki>[^\]]+)\]\]|!\[[^\]]*\]\((?P<target><[^>]+>|[^)]+)\)'
)
FENCE_RE = re.compile(r"^\s*(`{3,}|~{3,})(.*)$")
REMOTE_RE = re.compile(r"^https?://", re.IGNORECASE)
PROPERTY_LINK_RE = re.compile(r"^!?\[\[([^\]]+)\]\]$")


def iter_unfenced_lines(text: str) -> Iterator[str]:
    """Yield the lines of text that are outside fenced code blocks."""
    in_fence = False
    fence_char = ""
    fence_len = 0

    for line in text.splitlines(keepends=True):
        match = FENCE_RE.match(line)
        if match:
            fence = match.group(1)
            if not in_fence:
                in_fence = True
                fence_char = fence[0]
                fence_len = len(fence)
            elif fence[0] == fence_char and len(fence) >= fence_len:
                in_fence = False
            continue

        if not in_fence:
            yield line


def clean_wikilink_target(raw: str) -> str:
    """Strip the alias/size and heading parts of a wikilink target.

    Examples:
        >>> clean_wikilink_target("img.png|300")
        "img.png"
        >>> clean_wikilink_target("doc.pdf#page=2")
        "doc.pdf"
    """
    target = raw.split("|", 1)[0]
    target = target.split("#", 1)[0]
    return target.strip()


def clean_markdown_target(raw: str) -> str:
    """Extract the file path from a Markdown image target.

    Unwraps ``<...>``, drops a title or size suffix after whitespace,
    URL-decodes, and strips a ``#fragment``.

    Examples:
        >>> clean_markdown_target('assets/a%20b.png "Title"')
        "assets/a b.png"
        >>> clean_markdown_target("<assets/a b.png>")
        "assets/a b.png"
    """
    target = raw.strip()
    if target.startswith("<") and ">" in target:
        target = target[1:target.index(">")]
    else:
        parts = target.split()
        target = parts[0] if parts else ""
    target = unquote(target)
    target = target.split("#", 1)[0]
    return target.strip()


def is_remote_target(target: str) -> bool:
    return bool(REMOTE_RE.match(target))


def extract_attachment_paths(note_text: str) -> Iterator[str]:
    """Yield every local attachment referenced from a note body.

    Recognizes ``![[target]]`` embeds and ``![alt](target)`` images. Remote
    http(s) links and references inside fenced code blocks are ignored.
    Repeated references are yielded once per occurrence.

    Args:
        note_text: Markdown content of the note

    Yields:
        Attachment paths as written in the note, cleaned of size/alias suffixes

    Examples:
        >>> list(extract_attachment_paths("See ![[img.png]] and ![alt](http://example.com/x.png)"))
        ['img.png']
    """
    for line in iter_unfenced_lines(note_text):
        for match in EMBED_RE.finditer(line):
            if match.group("wiki") is not None:
                target = clean_wikilink_target(match.group("wiki"))
            else:
                target = clean_markdown_target(match.group("target"))
            if not target or is_remote_target(target):
                continue
            yield target


def extract_property_attachments(note_text: str) -> Iterator[str]:
    """Yield attachments linked from the note's front matter properties.

    Only ``[[file.ext]]`` values that point at non-note files are returned,
    e.g. ``cover: "[[assets/cover.jpg]]"``. Links to other notes are ignored.
    """
    try:
        post = frontmatter.loads(note_text)
    except (yaml.YAMLError, ValueError) as exc:
        logger.warning(f"Could not parse front matter: {exc}")
        return

    for value in post.metadata.values():
        items = value if isinstance(value, list) else [value]
        for item in items:
            # An unquoted [[x]] is parsed by YAML as a nested list.
            if isinstance(item, list) and len(item) == 1 and isinstance(item[0], str):
                target = clean_wikilink_target(item[0])
            elif isinstance(item, str):
                match = PROPERTY_LINK_RE.match(item.strip())
                if not match:
                    continue
                target = clean_wikilink_target(match.group(1))
            else:
                continue
            if not target or is_remote_target(target):
                continue
            if not PurePosixPath(target).suffix or file_kind(target) is FileKind.NOTE:
                continue
            yield target


# Transfer model
@dataclass(frozen=True)
class TransferRequest:
    """One file to transfer into one destination vault."""
    source_path: str
    content: bytes
    destination_root: Path
    delete_original: bool = False
    conflict_policy: ConflictPolicy = ConflictPolicy.RENAME

    @property
    def name(self) -> str:
        return PurePosixPath(self.source_path).name

    @property
    def kind(self) -> FileKind:
        return file_kind(self.source_path)


@dataclass
class AttachmentResult:
    """Result of transferring one attachment."""
    path: str
    status: AttachmentStatus
    destination: Optional[Path] = None
    error: Optional[str] = None
    deleted: bool = False


@dataclass
class AttachmentReport:
    """Per-attachment results of one note transfer."""
    results: List[AttachmentResult] = field(default_factory=list)

    def add(self, result: AttachmentResult) -> None:
        self.results.append(result)

    @property
    def succeeded(self) -> List[AttachmentResult]:
        return [r for r in self.results if r.status is AttachmentStatus.COPIED]

    @property
    def missing(self) -> List[AttachmentResult]:
        return [r for r in self.results if r.status is AttachmentStatus.MISSING]

    @property
    def failed(self) -> List[AttachmentResult]:
        return [r for r in self.results if r.status is AttachmentStatus.FAILED]


@dataclass
class TransferOutcome:
    """Result of one transfer call: success, skipped or failed."""
    status: TransferStatus
    source_path: str
    final_path: Optional[Path] = None
    reason: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    delete_requested: bool = False
    warnings: Dict[TransferWarning, str] = field(default_factory=dict)
    attachments: AttachmentReport = field(default_factory=AttachmentReport)

    @classmethod
    def success(cls, source_path: str, final_path: Path, **kwargs: Any) -> "TransferOutcome":
        return cls(TransferStatus.SUCCESS, source_path, final_path=final_path, **kwargs)

    @classmethod
    def skipped(cls, source_path: str, reason: str, **kwargs: Any) -> "TransferOutcome":
        return cls(TransferStatus.SKIPPED, source_path, reason=reason, **kwargs)

    @classmethod
    def failed(cls, source_path: str, error_kind: ErrorKind, message: str,
               **kwargs: Any) -> "TransferOutcome":
        return cls(TransferStatus.FAILED, source_path, error_kind=error_kind,
                   message=message, **kwargs)

    @property
    def ok(self) -> bool:
        return self.status is TransferStatus.SUCCESS

    @property
    def original_removed(self) -> bool:
        return (
            self.ok
            and self.delete_requested
            and TransferWarning.ORIGINAL_NOT_DELETED not in self.warnings
        )


# Transfer engine
def write_file(path: Path, content: bytes) -> None:
    """Write content to path, replacing whatever was there."""
    try:
        path.write_bytes(content)
    except OSError as exc:
        raise _fs_error("write", path, exc) from exc


def copy_timestamps(source: Path, destination: Path) -> None:
    """Copy the access and modification times of source onto destination."""
    try:
        stats = source.stat()
        os.utime(destination, ns=(stats.st_atime_ns, stats.st_mtime_ns))
    except OSError as exc:
        raise _fs_error("copy timestamps to", destination, exc) from exc


def locate_attachment(source_vault: SourceVault, reference: str, note_path: str) -> Optional[str]:
    """Find the vault-relative path of an attachment reference.

    The reference is tried relative to the vault root first, then relative to
    the folder of the note that references it.

    Args:
        source_vault: Vault the note lives in
        reference: Attachment path as written in the note
        note_path: Vault-relative path of the referencing note

    Returns:
        Normalized vault-relative path, or None if no such file exists inside
        the vault

    Examples:
        >>> locate_attachment(vault, "pic.png", "notes/a.md")  # notes/pic.png exists
        'notes/pic.png'
    """
    candidates = [reference]
    note_dir = posixpath.dirname(note_path)
    if note_dir:
        candidates.append(posixpath.join(note_dir, reference))

    for candidate in candidates:
        normalized = posixpath.normpath(candidate)
        if posixpath.isabs(normalized) or normalized == ".." or normalized.startswith("../"):
            continue
        if source_vault.exists(normalized):
            return normalized
    return None


def transfer_attachment(reference: str, note_path: str, source_vault: SourceVault,
                        destination_root: Path, delete_original: bool,
                        preserve_metadata: bool) -> AttachmentResult:
    """Copy (or move) a single attachment into the destination vault.

    Attachments always overwrite an existing file at the destination. Errors
    are logged and returned in the result, never raised.
    """
    rel_path = locate_attachment(source_vault, reference, note_path)
    if rel_path is None:
        logger.warning(f"Missing attachment {reference} referenced by {note_path}")
        return AttachmentResult(reference, AttachmentStatus.MISSING, error="not found in source vault")

    try:
        content = source_vault.read_bytes(rel_path)
        target = resolve_destination_path(destination_root, rel_path)
        write_file(target, content)
    except FilesystemError as exc:
        logger.warning(f"Attachment transfer failed for {rel_path}: {exc}")
        return AttachmentResult(rel_path, AttachmentStatus.FAILED, error=str(exc))

    result = AttachmentResult(rel_path, AttachmentStatus.COPIED, destination=target)
    logger.debug(f"Copied attachment {rel_path} to {target}")

    if preserve_metadata:
        try:
            copy_timestamps(source_vault.path_for(rel_path), target)
        except FilesystemError as exc:
            logger.warning(f"Timestamps not preserved for attachment {rel_path}: {exc}")

    if delete_original:
        try:
            source_vault.delete(rel_path)
            result.deleted = True
        except FilesystemError as exc:
            logger.warning(f"Attachment {rel_path} copied but not deleted: {exc}")
            result.error = str(exc)

    return result


def transfer_attachments(request: TransferRequest, source_vault: SourceVault,
                         settings: Settings) -> AttachmentReport:
    """Transfer every attachment referenced from the note in request.

    Each distinct attachment is transferred once even when the note references
    it several times. A reference back to the note itself is ignored.
    """
    report = AttachmentReport()
    text = request.content.decode("utf-8", errors="replace")
    references = list(extract_attachment_paths(text))
    if settings.include_property_attachments:
        references.extend(extract_property_attachments(text))
    logger.debug(f"Found {len(references)} attachment references in {request.source_path}")

    seen = set()
    for reference in references:
        resolved = locate_attachment(source_vault, reference, request.source_path) or reference
        if resolved in seen or resolved == request.source_path:
            continue
        seen.add(resolved)
        report.add(transfer_attachment(
            reference,
            request.source_path,
            source_vault,
            request.destination_root,
            request.delete_original,
            settings.preserve_metadata,
        ))
    return report


def transfer(request: TransferRequest, source_vault: SourceVault, settings: Settings) -> TransferOutcome:
    """Transfer one file and, for notes, its attachments.

    Steps: resolve the destination, resolve a name conflict, write the content,
    copy timestamps, transfer attachments, and delete the original when moving.
    Writes are not atomic; two concurrent transfers to the same destination
    can race.

    Args:
        request: File to transfer
        source_vault: Vault the file comes from (for timestamps, attachments
            and deletion)
        settings: Attachment and metadata options

    Returns:
        TransferOutcome. Filesystem errors on the file itself produce a FAILED
        outcome; metadata and deletion problems produce warnings on a SUCCESS;
        attachment problems are only recorded in ``outcome.attachments``.
    """
    logger.info(f"Transferring {request.source_path} to {request.destination_root}")
    common = {"delete_requested": request.delete_original}

    if same_vault(request.destination_root, source_vault.root):
        message = f"Destination {request.destination_root} is the source vault"
        logger.error(f"Transfer of {request.source_path} refused: {message}")
        return TransferOutcome.failed(request.source_path, ErrorKind.CONFIGURATION, message, **common)

    try:
        target = resolve_destination_path(request.destination_root, request.source_path)
        final_path = target
        if target.exists():
            final_path = resolve_conflict(target, request.name, request.conflict_policy)
            if final_path is None:
                logger.info(f"Skipped {request.source_path}: destination exists")
                return TransferOutcome.skipped(
                    request.source_path,
                    f"{target} already exists",
                    **common,
                )
        write_file(final_path, request.content)
    except FilesystemError as exc:
        logger.error(f"Transfer of {request.source_path} failed: {exc}")
        return TransferOutcome.failed(request.source_path, ErrorKind.FILESYSTEM, str(exc), **common)

    outcome = TransferOutcome.success(request.source_path, final_path, **common)

    if settings.preserve_metadata:
        try:
            copy_timestamps(source_vault.path_for(request.source_path), final_path)
        except FilesystemError as exc:
            logger.warning(f"Timestamps not preserved for {request.source_path}: {exc}")
            outcome.warnings[TransferWarning.METADATA_NOT_PRESERVED] = str(exc)

    if settings.include_attachments and request.kind is FileKind.NOTE:
        outcome.attachments = transfer_attachments(request, source_vault, settings)

    if request.delete_original:
        try:
            source_vault.delete(request.source_path)
        except FilesystemError as exc:
            logger.error(f"{request.source_path} was transferred but not deleted: {exc}")
            outcome.warnings[TransferWarning.ORIGINAL_NOT_DELETED] = str(exc)

    logger.info(f"Transferred {request.source_path} to {final_path}")
    return outcome


def build_request(source_vault: SourceVault, source_path: str, destination_root: Path,
                  settings: Settings, delete_original: Optional[bool] = None,
                  conflict_policy: Optional[ConflictPolicy] = None) -> TransferRequest:
    """Read a source file and build its TransferRequest.

    Explicit delete_original and conflict_policy arguments override settings.

    Raises:
        FilesystemError: If the source file cannot be read
    """
    content = source_vault.read_bytes(source_path)
    return TransferRequest(
        source_path=source_path,
        content=content,
        destination_root=Path(destination_root),
        delete_original=settings.delete_after_transfer if delete_original is None else delete_original,
        conflict_policy=settings.handle_conflicts if conflict_policy is None else conflict_policy,
    )


# Destination selection
def same_vault(a: str | Path, b: str | Path) -> bool:
    """True if both paths name the same folder once symlinks are resolved."""
    return os.path.realpath(os.path.expanduser(str(a))) == os.path.realpath(os.path.expanduser(str(b)))


def list_destinations(settings: Settings, source_root: Optional[str | Path] = None) -> List[Path]:
    """Registered vaults in order, leaving out the source vault if given."""
    destinations = list(settings.target_vault_paths)
    if source_root is None:
        return destinations
    return [vault for vault in destinations if not same_vault(vault, source_root)]


def select_destination(settings: Settings, chosen: Optional[str | Path] = None,
                       source_root: Optional[str | Path] = None) -> Path:
    """Pick the destination vault for a transfer.

    Args:
        settings: Settings holding the registered vaults
        chosen: Explicit destination; always wins when given
        source_root: Vault the files come from; never offered or accepted
            as the destination

    Returns:
        Destination vault root

    Raises:
        ConfigurationError: If no usable vault is registered and none was
            chosen, or if the chosen vault is the source vault
        DestinationChoiceRequired: If several vaults are registered and none
            was chosen; ``exc.choices`` lists them in registration order
    """
    if chosen is not None:
        root = VaultRegistry.normalize(chosen)
        if source_root is not None and same_vault(root, source_root):
            raise ConfigurationError(f"Destination {root} is the source vault")
        return root
    destinations = list_destinations(settings, source_root)
    if not destinations:
        if len(settings.target_vault_paths):
            raise ConfigurationError(
                "The only registered destination vault is the source vault. "
                "Add another with: vault-transfer vaults add PATH"
            )
        raise ConfigurationError(
            "No destination vault configured. Add one with: vault-transfer vaults add PATH"
        )
    if len(destinations) > 1:
        raise DestinationChoiceRequired(destinations)
    return destinations[0]


def prompt_for_destination(choices: List[Path], file_label: str = "",
                           input_func: Callable[[str], str] = input,
                           output: Optional[TextIO] = None) -> Optional[Path]:
    """Ask the user to pick one of several destination vaults.

    Returns:
        The chosen vault, or None if the user cancelled with empty input or EOF
    """
    if output is None:
        output = sys.stdout
    heading = f"Choose a destination vault for {file_label}:" if file_label else "Choose a destination vault:"
    print(heading, file=output)
    for index, vault in enumerate(choices, start=1):
        print(f"  {index}) {vault.name}  ({vault})", file=output)

    while True:
        try:
            raw = input_func("Vault number (empty to cancel): ").strip()
        except EOFError:
            return None
        if not raw:
            return None
        if raw.isdigit() and 1 <= int(raw) <= len(choices):
            return choices[int(raw) - 1]
        print(f"Invalid choice: {raw}", file=output)


def transfer_file(source_vault: SourceVault, source_path: str, settings: Settings,
                  destination: Optional[str | Path] = None,
                  delete_original: Optional[bool] = None,
                  conflict_policy: Optional[ConflictPolicy] = None) -> TransferOutcome:
    """Transfer one vault file to a destination vault.

    The destination is selected before the source is touched, so
    configuration errors never cause filesystem access.

    Raises:
        ConfigurationError: If no destination vault is registered, or the
            destination is the source vault
        DestinationChoiceRequired: If a choice between several vaults is needed
    """
    root = select_destination(settings, destination, source_vault.root)
    try:
        request = build_request(source_vault, source_path, root, settings,
                                delete_original, conflict_policy)
    except FilesystemError as exc:
        logger.error(f"Could not read {source_path}: {exc}")
        return TransferOutcome.failed(
            source_path,
            ErrorKind.FILESYSTEM,
            str(exc),
            delete_requested=bool(settings.delete_after_transfer if delete_original is None else delete_original),
        )
    return transfer(request, source_vault, settings)


# Notifications and reports
def describe_outcome(outcome: TransferOutcome) -> str:
    """Build the user-visible message for a transfer outcome.

    Examples:
        >>> describe_outcome(TransferOutcome.success("notes/a.md", Path("/v/notes/a.md")))
        'Transferred notes/a.md to /v/notes/a.md'
    """
    if outcome.status is TransferStatus.SKIPPED:
        return f"Skipped {outcome.source_path}: {outcome.reason}"
    if outcome.status is TransferStatus.FAILED:
        return f"Failed to transfer {outcome.source_path}: {outcome.message}"

    if outcome.original_removed:
        message = f"Moved {outcome.source_path} to {outcome.final_path}"
    else:
        message = f"Transferred {outcome.source_path} to {outcome.final_path}"
    if TransferWarning.ORIGINAL_NOT_DELETED in outcome.warnings:
        message += (
            ", but the original could not be deleted: "
            f"{outcome.warnings[TransferWarning.ORIGINAL_NOT_DELETED]}"
        )
    if TransferWarning.METADATA_NOT_PRESERVED in outcome.warnings:
        message += " (timestamps not preserved)"

    failed = len(outcome.attachments.failed)
    missing = len(outcome.attachments.missing)
    if failed:
        message += f"; {failed} attachment(s) failed"
    if missing:
        message += f"; {missing} attachment(s) missing"
    return message


def build_report(outcomes: List[TransferOutcome], destination: Optional[Path] = None) -> Dict[str, Any]:
    """Summarize a batch of transfers for write_report."""
    report: Dict[str, Any] = {
        "generated_utc": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "destination": str(destination) if destination else None,
        "summary": {
            "files_processed": len(outcomes),
            "transferred": 0,
            "skipped": 0,
            "failed": 0,
            "attachments_copied": 0,
            "attachments_missing": 0,
            "attachments_failed": 0,
        },
        "files": [],
    }
    summary = report["summary"]
    for outcome in outcomes:
        if outcome.status is TransferStatus.SUCCESS:
            summary["transferred"] += 1
        elif outcome.status is TransferStatus.SKIPPED:
            summary["skipped"] += 1
        else:
            summary["failed"] += 1
        summary["attachments_copied"] += len(outcome.attachments.succeeded)
        summary["attachments_missing"] += len(outcome.attachments.missing)
        summary["attachments_failed"] += len(outcome.attachments.failed)
        report["files"].append({
            "source": outcome.source_path,
            "status": outcome.status.value,
            "destination": str(outcome.final_path) if outcome.final_path else None,
            "message": describe_outcome(outcome),
            "warnings": [w.value for w in outcome.warnings],
            "attachments": [r.path for r in outcome.attachments.succeeded],
            "missing_attachments": [r.path for r in outcome.attachments.missing],
            "failed_attachments": [r.path for r in outcome.attachments.failed],
        })
    return report


def write_report(report_path: Path, report_format: str, data: Dict[str, Any]) -> None:
    """Write a transfer report to file.

    Args:
        report_path: Output file path
        report_format: "json" or "md" (markdown)
        data: Report data from build_report
    """
    if report_format == "json":
        report_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        return

    summary = data["summary"]
    lines = []
    lines.append("# Vault Transfer Report")
    lines.append("")
    lines.append(f"- Generated: {data['generated_utc']}")
    lines.append(f"- Destination: {data['destination'] or 'n/a'}")
    lines.append(f"- Files processed: {summary['files_processed']}")
    lines.append(f"- Transferred: {summary['transferred']}")
    lines.append(f"- Skipped: {summary['skipped']}")
    lines.append(f"- Failed: {summary['failed']}")
    lines.append(f"- Attachments copied: {summary['attachments_copied']}")
    lines.append(f"- Attachments missing: {summary['attachments_missing']}")
    lines.append(f"- Attachments failed: {summary['attachments_failed']}")
    lines.append("")
    lines.append("## Files")
    lines.append("")
    for entry in data["files"]:
        lines.append(f"### {entry['source']}")
        lines.append("")
        lines.append(f"- Status: {entry['status']}")
        lines.append(f"- Destination: {entry['destination'] or 'None'}")
        lines.append(f"- Attachments: {len(entry['attachments'])}")
        if entry["warnings"]:
            lines.append(f"- Warnings: {', '.join(entry['warnings'])}")
        for label, key in (("Missing", "missing_attachments"), ("Failed", "failed_attachments")):
            if entry[key]:
                lines.append(f"{label}:")
                for path in entry[key]:
                    lines.append(f"- {path}")
        lines.append("")
    report_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


# Command line
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Commands:
        transfer: Copy or move files into a destination vault
        vaults: List, add or remove destination vaults
        config: Show or change settings
    """
    parser = argparse.ArgumentParser(
        prog="vault-transfer",
        description="Copy or move notes and their attachments into another vault.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Settings file (default: $VAULT_TRANSFER_CONFIG or ~/.config/vault-transfer/settings.json).",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Quiet mode (only show errors)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write detailed logs to file (always DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    transfer_parser = subparsers.add_parser("transfer", help="Transfer files to another vault.")
    transfer_parser.add_argument("files", nargs="+", help="Files to transfer (vault-relative or filesystem paths).")
    transfer_parser.add_argument("--source-vault", default=".", help="Root of the vault the files live in.")
    transfer_parser.add_argument("--to", help="Destination vault; required when several are registered and stdin is not a terminal.")
    mode = transfer_parser.add_mutually_exclusive_group()
    mode.add_argument("--move", action="store_true", help="Delete the originals after transfer.")
    mode.add_argument("--copy", action="store_true", help="Keep the originals even if delete_after_transfer is set.")
    transfer_parser.add_argument(
        "--on-conflict",
        choices=[p.value for p in ConflictPolicy],
        help="Override the configured conflict policy for this run.",
    )
    transfer_parser.add_argument("--no-progress", action="store_true", help="Disable progress bar")
    transfer_parser.add_argument("--report", type=Path, help="Write a transfer report to this file.")
    transfer_parser.add_argument("--report-format", choices=["json", "md"], default="json", help="Report format.")
    transfer_parser.set_defaults(func=cmd_transfer)

    vaults_parser = subparsers.add_parser("vaults", help="Manage destination vaults.")
    vaults_sub = vaults_parser.add_subparsers(dest="vaults_command", required=True)
    vaults_sub.add_parser("list", help="List destination vaults.")
    add_parser = vaults_sub.add_parser("add", help="Register a destination vault.")
    add_parser.add_argument("path")
    remove_parser = vaults_sub.add_parser("remove", help="Unregister a destination vault.")
    remove_parser.add_argument("path")
    vaults_parser.set_defaults(func=cmd_vaults)

    config_parser = subparsers.add_parser("config", help="Show or change settings.")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the current settings.")
    set_parser = config_sub.add_parser("set", help="Change a setting.")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    config_parser.set_defaults(func=cmd_config)

    return parser.parse_args(argv)


def cmd_transfer(args: argparse.Namespace, store: SettingsStore) -> int:
    settings = store.load()
    source_vault = SourceVault(Path(args.source_vault).expanduser())
    delete_original = True if args.move else False if args.copy else None
    policy = ConflictPolicy(args.on_conflict) if args.on_conflict else None

    choices: List[Path] = []
    try:
        destination: Optional[Path] = select_destination(settings, args.to, source_vault.root)
    except DestinationChoiceRequired as exc:
        if not sys.stdin.isatty():
            raise ConfigurationError(
                "Several destination vaults are registered; choose one with --to"
            ) from exc
        destination = None
        choices = exc.choices

    if destination is None:
        label = str(args.files[0]) if len(args.files) == 1 else f"{len(args.files)} files"
        destination = prompt_for_destination(choices, label)
        if destination is None:
            print("Transfer cancelled.")
            return 1

    logger.info(f"Transferring {len(args.files)} file(s) to {destination}")
    files: Iterable[str] = args.files
    if not args.no_progress and len(args.files) > 1 and sys.stdout.isatty():
        files = tqdm(args.files, desc="Transferring", unit="file")
    elif not sys.stdout.isatty():
        logger.debug("TTY not detected, progress bar disabled")

    outcomes = []
    for user_path in files:
        try:
            rel_path = source_vault.relative_path(user_path)
        except ConfigurationError as exc:
            logger.error(f"Cannot transfer {user_path}: {exc}")
            outcome = TransferOutcome.failed(
                str(user_path), ErrorKind.CONFIGURATION, str(exc),
                delete_requested=bool(settings.delete_after_transfer if delete_original is None else delete_original),
            )
        else:
            outcome = transfer_file(source_vault, rel_path, settings, destination,
                                    delete_original, policy)
        outcomes.append(outcome)
        tqdm.write(describe_outcome(outcome))

    if args.report:
        write_report(args.report, args.report_format, build_report(outcomes, destination))
        logger.info(f"Report written to {args.report}")

    failed = sum(1 for o in outcomes if o.status is TransferStatus.FAILED)
    if failed:
        logger.error(f"{failed} of {len(outcomes)} transfer(s) failed")
        return 1
    return 0


def cmd_vaults(args: argparse.Namespace, store: SettingsStore) -> int:
    settings = store.load()
    registry = settings.target_vault_paths

    if args.vaults_command == "list":
        if not len(registry):
            print("No destination vaults registered.")
        for index, vault in enumerate(registry, start=1):
            print(f"{index}. {vault}")
        return 0

    if args.vaults_command == "add":
        try:
            added = registry.add(args.path)
        except DuplicateVaultError:
            print(f"Vault already registered: {VaultRegistry.normalize(args.path)}")
            return 1
        if not added.is_dir():
            logger.warning(f"{added} is not an existing folder; it will be created on first transfer")
        store.save(settings)
        print(f"Added vault: {added}")
        return 0

    removed = registry.remove(args.path)
    store.save(settings)
    print(f"Removed vault: {removed}")
    return 0


def cmd_config(args: argparse.Namespace, store: SettingsStore) -> int:
    settings = store.load()
    if args.config_command == "set":
        set_setting(settings, args.key, args.value)
        store.save(settings)
    print(json.dumps(settings_to_dict(settings), indent=2, ensure_ascii=False))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the vault-transfer command."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    store = SettingsStore(args.config or default_config_path())
    logger.debug(f"Settings file: {store.path}")

    try:
        return args.func(args, store)
    except ConfigurationError as exc:
        logger.error(str(exc))
        return 2
    except VaultTransferError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
