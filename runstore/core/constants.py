"""
System-wide constants for the run artifact store.
"""

from enum import Enum


# =============================================================================
# Enums
# =============================================================================


class RunFamily(str, Enum):
    """Categories of generation. The value is the run directory prefix."""

    PRODUCT_DOCS = "product-docs"
    ARCHITECTURE_INSIGHTS = "architecture-insights"


class ArtifactKind(str, Enum):
    """Kinds of per-item artifacts that are aggregated by natural key."""

    FILE_SUMMARIES = "file-summaries"
    MODULE_SUMMARIES = "module-summaries"


class RunState(str, Enum):
    """Lifecycle of one run directory."""

    EMPTY = "empty"
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"
    ARCHIVED = "archived"


class ChangeType(str, Enum):
    """Filesystem change notifications delivered by the hub."""

    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


class GenerationPhase(str, Enum):
    """Named states of a generation session."""

    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_ITERATION = "awaiting_iteration"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# API Constants
# =============================================================================

API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"

# =============================================================================
# Filesystem Layout
# =============================================================================

METADATA_KEY = "_metadata"
AGGREGATE_ITEMS_KEY = "items"

JSON_SUFFIX = ".json"
MARKDOWN_SUFFIX = ".md"
TEMP_SUFFIX = ".tmp"

ITERATION_INFIX = "-iteration-"
PRODUCT_PURPOSE_DOCUMENT = "product-purpose-analysis"

# Legacy top-level consolidated files removed by clear-all
LEGACY_CONSOLIDATED_FILES = (
    "code-analysis.json",
    "enhanced-product-documentation.json",
    "enhanced-product-documentation.md",
)

# Artifact kinds written for each family
FAMILY_KINDS = {
    RunFamily.PRODUCT_DOCS: (ArtifactKind.FILE_SUMMARIES, ArtifactKind.MODULE_SUMMARIES),
    RunFamily.ARCHITECTURE_INSIGHTS: (),
}

KIND_FAMILY = {
    ArtifactKind.FILE_SUMMARIES: RunFamily.PRODUCT_DOCS,
    ArtifactKind.MODULE_SUMMARIES: RunFamily.PRODUCT_DOCS,
}
