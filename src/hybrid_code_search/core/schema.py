"""Snapshot schema versioning and compatibility checking.

A snapshot written by one engine version must never be half-read by another:
the schema version stored in the file must match the running code exactly,
otherwise loading fails with ``IncompatibleVersionError`` and the caller
rebuilds.
"""

# Identifies a hybrid-code-search snapshot file
FORMAT_TAG = "hybrid-code-search/index"

# Schema version - ONLY bump when the snapshot layout changes
# This is separate from package __version__ which changes for every release
SCHEMA_VERSION = "1.0.0"

# Schema changelog - documents when the snapshot layout actually changed
SCHEMA_CHANGELOG = {
    "1.0.0": "Initial snapshot: chunk table, BM25 postings, vectors, metadata",
}


class SchemaVersion:
    """Schema version information and comparison."""

    def __init__(self, version_str: str) -> None:
        """Parse version string (e.g., "1.0.0").

        Raises:
            ValueError: If a component is not an integer
        """
        self.version_str = version_str
        parts = version_str.split(".")
        self.major = int(parts[0]) if len(parts) > 0 else 0
        self.minor = int(parts[1]) if len(parts) > 1 else 0
        self.patch = int(parts[2]) if len(parts) > 2 else 0

    def is_compatible_with(self, other: "SchemaVersion") -> bool:
        """Exact schema version match (same major.minor.patch)."""
        return (
            self.major == other.major
            and self.minor == other.minor
            and self.patch == other.patch
        )

    def __str__(self) -> str:
        return self.version_str

    def __repr__(self) -> str:
        return f"SchemaVersion('{self.version_str}')"


CURRENT_SCHEMA = SchemaVersion(SCHEMA_VERSION)
