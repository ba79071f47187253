"""Data models for ElastiCache replication groups."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CreatedReplicationGroup:
    """Result of a replication group creation call.

    ``writer_endpoint`` falls back to the requested identifier when the
    provider has not published an endpoint yet (endpoint pending).
    """

    identifier: str
    writer_endpoint: str
    reader_endpoint: str

    @property
    def endpoint_pending(self) -> bool:
        return self.writer_endpoint == self.identifier


@dataclass
class ReplicationGroupMember:
    """A cache cluster (instance) belonging to a replication group."""

    cache_cluster_id: str
    node_group_id: str = ""
    is_primary: bool = False
    cache_node_type: str = ""


@dataclass
class NodeGroup:
    node_group_id: str
    members: List[ReplicationGroupMember] = field(default_factory=list)


@dataclass
class ReplicationGroupDescription:
    """Live view of a replication group's membership."""

    identifier: str
    status: str = ""
    cluster_enabled: bool = False
    cache_node_type: str = ""
    cache_parameter_group_name: Optional[str] = None
    node_groups: List[NodeGroup] = field(default_factory=list)
    writer_endpoint: Optional[str] = None
    reader_endpoint: Optional[str] = None

    @property
    def members(self) -> List[ReplicationGroupMember]:
        return [member for group in self.node_groups for member in group.members]

    @property
    def replicas_per_node_group(self) -> int:
        """Replica count of the first node group (members minus its primary)."""
        if not self.node_groups:
            return 0
        return max(len(self.node_groups[0].members) - 1, 0)
