"""Error types raised while loading, validating and compiling pipelines."""

from __future__ import annotations


class CompileError(Exception):
    """Base class for every error the compiler raises."""


class ParseError(CompileError):
    """The YAML document does not have the shape of a pipeline definition."""


class UnsupportedFeatureError(CompileError):
    """Valid syntax that this compiler does not implement."""


class ContainerMergeError(CompileError):
    """A container override cannot be merged onto its parent."""


class FieldError(CompileError):
    """A validation failure pinned to one or more field paths.

    Paths are built while the validator unwinds: the innermost check reports
    ``["variable"]`` and each caller prefixes its own segment, ending with
    something like ``stages[0].steps[1].loop.variable``.
    """

    def __init__(self, message: str, paths: list[str] | None = None, details: str = ""):
        super().__init__(message)
        self.message = message
        self.paths = list(paths or [])
        self.details = details

    def via_field(self, *prefixes: str) -> FieldError:
        """Prefix every path with the given field names, outermost first."""
        for prefix in reversed(prefixes):
            self.paths = [_join(prefix, p) for p in self.paths]
        return self

    def via_index(self, index: int) -> FieldError:
        self.paths = [_join(f"[{index}]", p) for p in self.paths]
        return self

    def via_field_index(self, field: str, index: int) -> FieldError:
        return self.via_index(index).via_field(field)

    def __str__(self) -> str:
        text = self.message
        if self.paths:
            text = f"{text}: {', '.join(self.paths)}"
        if self.details:
            text = f"{text}\n{self.details}"
        return text


class NameCollisionError(FieldError):
    """Two or more stage names mangle to the same label."""


def _join(prefix: str, path: str) -> str:
    if not path:
        return prefix
    if path.startswith("["):
        return f"{prefix}{path}"
    return f"{prefix}.{path}"


# ── constructors for the common shapes ──────────────────────

def missing_field(*fields: str) -> FieldError:
    return FieldError("missing field(s)", list(fields))


def missing_one_of(*fields: str) -> FieldError:
    return FieldError("expected exactly one, got neither", list(fields))


def multiple_one_of(*fields: str) -> FieldError:
    return FieldError("expected exactly one, got both", list(fields))
