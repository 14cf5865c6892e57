"""Error taxonomy shared by the parser, the runtime adapter and the reconciler."""
from __future__ import annotations


class DCRError(Exception):
    pass


class ParseError(DCRError):
    """The uploaded manifest was rejected. Nothing from it is applied."""


class ManifestSyntaxError(ParseError):
    pass


class ValidationError(ParseError):
    def __init__(self, field: str, reason: str, detail: str | None = None):
        self.field = field
        self.reason = reason
        self.detail = detail
        msg = f"{field}: {reason}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class NotFound(DCRError):
    def __init__(self, ref: str, action: str | None = None):
        self.ref = ref
        self.action = action
        super().__init__(f"Container '{ref}' not found.")


class RuntimeUnavailable(DCRError):
    """The container engine could not be reached. Treat state as unknown."""


class ContainerRuntimeError(DCRError):
    def __init__(self, cause: str, name: str | None = None, action: str | None = None):
        self.cause = cause
        self.name = name
        self.action = action
        prefix = ""
        if action and name:
            prefix = f"{action} {name}: "
        elif name:
            prefix = f"{name}: "
        super().__init__(f"{prefix}{cause}")


class PartialApplyFailure(DCRError):
    """Some actions of a plan failed while the others were applied."""

    def __init__(self, summary):
        self.summary = summary
        names = ", ".join(f.name for f in summary.failed)
        super().__init__(f"Generation {summary.generation}: {len(summary.failed)} action(s) failed ({names}).")
