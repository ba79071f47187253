"""Shared fixtures for orchestrator and reconciler tests."""

import pytest
from unittest.mock import MagicMock

from elasticache_provisioner.aws.client import ElastiCacheProvisioningClient
from elasticache_provisioner.aws.models import (
    CreatedReplicationGroup,
    NodeGroup,
    ReplicationGroupDescription,
    ReplicationGroupMember,
)
from elasticache_provisioner.config import parse_config
from elasticache_provisioner.state import StateStore


def make_description(rg_id, node_groups, cluster_enabled=False):
    """Build a ReplicationGroupDescription from [(node_group_id, [(id, primary, type)])]."""
    return ReplicationGroupDescription(
        identifier=rg_id,
        status="available",
        cluster_enabled=cluster_enabled,
        cache_node_type="cache.r6g.large",
        node_groups=[
            NodeGroup(
                node_group_id=ng_id,
                members=[
                    ReplicationGroupMember(
                        cache_cluster_id=member_id,
                        node_group_id=ng_id,
                        is_primary=primary,
                        cache_node_type=node_type,
                    )
                    for member_id, primary, node_type in members
                ],
            )
            for ng_id, members in node_groups
        ],
        writer_endpoint=f"{rg_id}.cache.amazonaws.com:6379",
        reader_endpoint=f"{rg_id}-ro.cache.amazonaws.com:6379",
    )


@pytest.fixture
def config():
    return parse_config({
        "component": {"component_name": "orders", "env_name": "qa"},
        "account": {"region": "us-east-1", "tags": {"env": "prod", "team": "x"}},
        "redis": {"subnet_groups": ["orders-subnets"], "security_groups": ["sg-123"]},
        "deploy": {
            "version": "7",
            "cache_node_type": "cache.r6g.large",
            "writer": {"instance_type": "cache.r6g.large", "promotion_tier": 0},
            "readers": [
                {"instance_type": "cache.r6g.large", "instance_count": 2, "promotion_tier": 1},
            ],
            "tags": {"env": "qa"},
        },
        "wait": {"poll_interval_seconds": 1, "timeout_seconds": 5, "max_workers": 8},
    })


@pytest.fixture
def client():
    mock_client = MagicMock(spec=ElastiCacheProvisioningClient)
    mock_client.create_replication_group.side_effect = (
        lambda rg_id, *args: CreatedReplicationGroup(
            identifier=rg_id,
            writer_endpoint=f"{rg_id}.cache.amazonaws.com:6379",
            reader_endpoint=f"{rg_id}-ro.cache.amazonaws.com:6379",
        )
    )
    return mock_client


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state.json"))
