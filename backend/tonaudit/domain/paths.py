"""Path normalization, language detection and content fingerprints.

Pure functions -- no I/O.
"""

import hashlib
import posixpath

from tonaudit.domain.enums import Language

LANGUAGE_BY_EXTENSION: dict[str, Language] = {
    ".tolk": Language.TOLK,
    ".fc": Language.FUNC,
    ".func": Language.FUNC,
    ".tact": Language.TACT,
    ".fif": Language.FIFT,
    ".fift": Language.FIFT,
    ".tlb": Language.TLB,
}

# Directory names and filename suffixes that mark a file as a test
TEST_DIRECTORIES = ("tests", "test", "__tests__", "spec")
TEST_SUFFIXES = (".spec.ts", ".test.ts", ".spec.js", ".test.js")


def normalize_path(path: str) -> str:
    """Normalize a repository-relative path to forward slashes without a leading './'."""
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def safe_relative_path(path: str) -> str | None:
    """Return the normalized path, or None if it escapes the repository root."""
    normalized = posixpath.normpath(normalize_path(path))
    if normalized in ("", ".") or normalized.startswith("/"):
        return None
    if normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def detect_language(path: str) -> Language:
    """Detect the contract language from the file extension."""
    extension = posixpath.splitext(normalize_path(path))[1].lower()
    return LANGUAGE_BY_EXTENSION.get(extension, Language.UNKNOWN)


def is_test_path(path: str) -> bool:
    normalized = normalize_path(path).lower()
    parts = normalized.split("/")
    if any(part in TEST_DIRECTORIES for part in parts[:-1]):
        return True
    return normalized.endswith(TEST_SUFFIXES)


def content_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def finding_fingerprint(
    title: str,
    file_path: str,
    start_line: int,
    end_line: int,
    severity: str,
) -> str:
    """Deterministic fingerprint for a finding that carries no explicit id.

    Stable across revisions as long as title, location and severity are unchanged.
    """
    canonical = "::".join(
        [
            title.lower().strip(),
            normalize_path(file_path).lower(),
            str(start_line),
            str(end_line),
            severity.lower().strip(),
        ]
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
