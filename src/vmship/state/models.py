"""Resource declaration and state record data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResourceKind(str, Enum):
    """Kinds of cloud resources the engine can provision."""

    COMPUTE_INSTANCE = "compute_instance"
    SECURITY_GROUP = "security_group"
    REPOSITORY = "repository"
    IAM_ROLE = "iam_role"


class ResourceSpec(BaseModel):
    """A declared resource, as produced by the configuration parser."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z][A-Za-z0-9_-]*$",
        description="Logical resource ID, unique within a graph",
    )
    kind: ResourceKind = Field(..., description="Resource kind")
    attributes: Dict[str, Any] = Field(
        default_factory=dict,
        description="Desired attributes; strings may contain ${id.output} references",
    )
    depends_on: Tuple[str, ...] = Field(
        default_factory=tuple, description="Explicit dependency IDs, in declaration order"
    )

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Drop repeated dependency IDs while keeping the first occurrence."""
        seen = []
        for dep_id in v:
            if dep_id not in seen:
                seen.append(dep_id)
        return tuple(seen)


class StateRecord(BaseModel):
    """Last observed remote state of one resource."""

    id: str = Field(..., description="Logical resource ID")
    kind: ResourceKind = Field(..., description="Resource kind")
    remote_id: str = Field(..., description="Provider-assigned identifier")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Last-applied declared attributes"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Attributes reported by the provider"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Logical IDs this resource depended on when applied"
    )
    version: int = Field(0, ge=0, description="Compare-and-swap version token")
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def output(self, name: str) -> Optional[Any]:
        """Look up an attribute other resources may reference.

        ``id`` resolves to the remote identifier; anything else is looked up
        in the provider outputs first, then in the declared attributes.
        """
        if name == "id":
            return self.remote_id
        if name in self.outputs:
            return self.outputs[name]
        return self.attributes.get(name)


class StateDocument(BaseModel):
    """On-disk layout of the state file."""

    format_version: str = Field("1", description="State file format version")
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    records: Dict[str, StateRecord] = Field(default_factory=dict)
