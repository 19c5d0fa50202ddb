"""Typed payloads for queued operations, one dataclass per operation type."""

from dataclasses import MISSING, dataclass, field, fields
from typing import ClassVar


def _key(name: str) -> dict:
    return {"json": name}


@dataclass(frozen=True)
class OperationPayload:
    """Base class. Subclasses set ``operation_type`` and map fields to camelCase JSON keys."""

    operation_type: ClassVar[str] = ""

    @classmethod
    def from_dict(cls, data: dict) -> "OperationPayload":
        if not isinstance(data, dict):
            raise ValueError(f"{cls.operation_type} payload must be an object")
        kwargs = {}
        for f in fields(cls):
            key = f.metadata.get("json", f.name)
            if key in data and data[key] is not None:
                kwargs[f.name] = data[key]
            elif f.default is MISSING and f.default_factory is MISSING:
                raise ValueError(f"{cls.operation_type} payload is missing '{key}'")
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return {f.metadata.get("json", f.name): getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class CreateForkPayload(OperationPayload):
    operation_type: ClassVar[str] = "create_fork"

    source_owner: str = field(metadata=_key("sourceOwner"))
    source_repo: str = field(metadata=_key("sourceRepo"))
    target_org: str = field(metadata=_key("targetOrg"))


@dataclass(frozen=True)
class CreatePRPayload(OperationPayload):
    operation_type: ClassVar[str] = "create_pr"

    fork_owner: str = field(metadata=_key("forkOwner"))
    fork_repo: str = field(metadata=_key("forkRepo"))
    branch: str = field(metadata=_key("branch"))
    title: str = field(metadata=_key("title"))
    base_branch: str = field(default="main", metadata=_key("baseBranch"))
    body: str = field(default="", metadata=_key("body"))


@dataclass(frozen=True)
class DeleteForkPayload(OperationPayload):
    operation_type: ClassVar[str] = "delete_fork"

    owner: str = field(metadata=_key("owner"))
    repo: str = field(metadata=_key("repo"))


@dataclass(frozen=True)
class DeleteBranchPayload(OperationPayload):
    operation_type: ClassVar[str] = "delete_branch"

    owner: str = field(metadata=_key("owner"))
    repo: str = field(metadata=_key("repo"))
    branch: str = field(metadata=_key("branch"))


@dataclass(frozen=True)
class SimulatePRPayload(OperationPayload):
    operation_type: ClassVar[str] = "simulate_pr"

    pr_url: str = field(metadata=_key("prUrl"))
    target_org: str | None = field(default=None, metadata=_key("targetOrg"))
    cache_repo: bool = field(default=True, metadata=_key("cacheRepo"))


PAYLOAD_TYPES: dict[str, type[OperationPayload]] = {
    cls.operation_type: cls
    for cls in (
        CreateForkPayload,
        CreatePRPayload,
        DeleteForkPayload,
        DeleteBranchPayload,
        SimulatePRPayload,
    )
}


def parse_payload(operation_type: str, data: dict) -> OperationPayload:
    """Build the typed payload for an operation type. Raises ValueError on bad input."""
    cls = PAYLOAD_TYPES.get(operation_type)
    if cls is None:
        raise ValueError(f"Unknown operation type: {operation_type}")
    return cls.from_dict(data)
