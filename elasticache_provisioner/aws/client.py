"""AWS ElastiCache client for provisioning Redis replication groups."""

import logging
import math
import time
from functools import wraps
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, WaiterError

from elasticache_provisioner.aws.exceptions import (
    AWSAPIError,
    AWSConnectionError,
    AWSCredentialsError,
    AWSInvalidParameterError,
    AWSPermissionError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    WaitTimeoutError,
)
from elasticache_provisioner.aws.models import (
    CreatedReplicationGroup,
    NodeGroup,
    ReplicationGroupDescription,
    ReplicationGroupMember,
)
from elasticache_provisioner.config import DeployConfig, RedisData, WaitConfig
from elasticache_provisioner.constants import ENGINE_TYPE
from elasticache_provisioner.utils import apply_present_fields, to_aws_tags

logger = logging.getLogger(__name__)

REPLICATION_GROUP = "replication group"
CACHE_CLUSTER = "cache cluster"
PARAMETER_GROUP = "cache parameter group"

# DeployConfig attribute -> CreateReplicationGroup request key
REPLICATION_GROUP_FIELDS = {
    "version": "EngineVersion",
    "num_node_groups": "NumNodeGroups",
    "replicas_per_node_group": "ReplicasPerNodeGroup",
    "automatic_failover_enabled": "AutomaticFailoverEnabled",
    "multi_az_enabled": "MultiAZEnabled",
    "transit_encryption_enabled": "TransitEncryptionEnabled",
    "at_rest_encryption_enabled": "AtRestEncryptionEnabled",
    "snapshot_retention_limit": "SnapshotRetentionLimit",
    "snapshot_window": "SnapshotWindow",
    "preferred_maintenance_window": "PreferredMaintenanceWindow",
    "notification_topic_arn": "NotificationTopicArn",
    "auto_minor_version_upgrade": "AutoMinorVersionUpgrade",
    "preferred_cache_cluster_azs": "PreferredCacheClusterAZs",
    "kms_key_id": "KmsKeyId",
}


def handle_aws_errors(resource_type: str) -> Callable:
    """Decorator factory to translate AWS API errors, with retry on throttling.

    The wrapped method's first positional argument (after self) is taken as
    the resource identifier reported in not-found/already-exists errors.

    Args:
        resource_type: Kind of resource the wrapped call operates on

    Returns:
        Decorator
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            max_retries = 3
            retry_delay = 1  # seconds
            resource_id = str(args[1]) if len(args) > 1 else "unknown"
            operation = func.__name__

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except ClientError as e:
                    error_code = e.response.get("Error", {}).get("Code", "Unknown")
                    error_message = e.response.get("Error", {}).get("Message", str(e))

                    # Handle throttling with retry
                    if error_code in ["Throttling", "RequestLimitExceeded"]:
                        if attempt < max_retries - 1:
                            wait_time = retry_delay * (2 ** attempt)  # Exponential backoff
                            logger.warning(
                                f"API throttled, retrying in {wait_time}s (attempt {attempt + 1}/{max_retries})"
                            )
                            time.sleep(wait_time)
                            continue

                    if "NotFound" in error_code:
                        raise ResourceNotFoundError(resource_type, resource_id, operation, e)

                    if "AlreadyExists" in error_code:
                        raise ResourceAlreadyExistsError(resource_type, resource_id, operation, e)

                    if error_code in ["AccessDenied", "UnauthorizedOperation"]:
                        raise AWSPermissionError(operation, e)

                    if error_code in ["InvalidParameterValue", "InvalidParameterCombination"]:
                        raise AWSInvalidParameterError(operation, error_message, e)

                    raise AWSAPIError(operation, error_code, error_message, e)

                except NoCredentialsError as e:
                    raise AWSCredentialsError(e)

                except BotoCoreError as e:
                    region = "unknown"
                    if args and hasattr(args[0], "region"):
                        region = args[0].region
                    raise AWSConnectionError(region, e)

            # Should not reach here, but just in case
            return func(*args, **kwargs)

        return wrapper

    return decorator


def _format_endpoint(endpoint: Mapping[str, Any]) -> str:
    return f"{endpoint['Address']}:{endpoint.get('Port', 6379)}"


def resolve_endpoints(replication_group: Mapping[str, Any], requested_id: str) -> Tuple[str, str]:
    """Resolve (writer, reader) endpoints from a replication group payload.

    Preference order: configuration endpoint (cluster mode), then the primary
    endpoint of the first node group. When neither is published yet, the
    requested identifier is returned for both so callers can re-query later.

    Args:
        replication_group: ReplicationGroup dictionary from the API
        requested_id: Identifier that was requested at creation time

    Returns:
        Tuple of (writer_endpoint, reader_endpoint)
    """
    configuration_endpoint = replication_group.get("ConfigurationEndpoint") or {}
    if configuration_endpoint.get("Address"):
        endpoint = _format_endpoint(configuration_endpoint)
        return endpoint, endpoint

    node_groups = replication_group.get("NodeGroups") or []
    if node_groups:
        primary_endpoint = node_groups[0].get("PrimaryEndpoint") or {}
        if primary_endpoint.get("Address"):
            writer = _format_endpoint(primary_endpoint)
            reader_endpoint = node_groups[0].get("ReaderEndpoint") or {}
            reader = _format_endpoint(reader_endpoint) if reader_endpoint.get("Address") else writer
            return writer, reader

    logger.debug(f"No endpoint published yet for {requested_id}, using identifier as placeholder")
    return requested_id, requested_id


class ElastiCacheProvisioningClient:
    """Client for creating, describing and deleting ElastiCache Redis resources.

    Every mutating call is synchronous. The ``wait_until_*`` methods block on
    boto3 waiters configured from :class:`WaitConfig` and raise
    :class:`WaitTimeoutError` when the target condition is not reached.
    """

    def __init__(self, region: str, profile: str = "default", wait_config: Optional[WaitConfig] = None):
        """Initialize ElastiCache provisioning client.

        Args:
            region: AWS region name
            profile: AWS profile name (default: "default")
            wait_config: Polling interval/timeout used by waiters
        """
        self.region = region
        self.profile = profile
        self.wait_config = wait_config or WaitConfig()

        session = boto3.Session(profile_name=profile, region_name=region)
        self.client = session.client("elasticache")

        logger.info(f"Initialized ElastiCache client for region={region}, profile={profile}")

    # Parameter groups

    @handle_aws_errors(PARAMETER_GROUP)
    def create_cache_parameter_group(self, name: str, family: str, tags: Mapping[str, str]) -> None:
        self.client.create_cache_parameter_group(
            CacheParameterGroupName=name,
            CacheParameterGroupFamily=family,
            Description=name,
            Tags=to_aws_tags(tags),
        )

    @handle_aws_errors(PARAMETER_GROUP)
    def modify_cache_parameter_group(self, name: str, parameters: Mapping[str, str]) -> None:
        self.client.modify_cache_parameter_group(
            CacheParameterGroupName=name,
            ParameterNameValues=[
                {"ParameterName": key, "ParameterValue": str(value)}
                for key, value in parameters.items()
            ],
        )

    @handle_aws_errors(PARAMETER_GROUP)
    def delete_cache_parameter_group(self, name: str) -> None:
        self.client.delete_cache_parameter_group(CacheParameterGroupName=name)

    # Replication groups

    @handle_aws_errors(REPLICATION_GROUP)
    def create_replication_group(
        self,
        replication_group_id: str,
        cache_parameter_group_name: Optional[str],
        tags: Mapping[str, str],
        deploy_config: DeployConfig,
        redis_data: RedisData
    ) -> CreatedReplicationGroup:
        """Create a Redis replication group with the full deploy topology.

        Args:
            replication_group_id: Identifier for the replication group
            cache_parameter_group_name: Parameter group to bind (optional)
            tags: Tags applied to the replication group
            deploy_config: Desired topology and settings
            redis_data: Subnet groups and security groups

        Returns:
            CreatedReplicationGroup with resolved (or placeholder) endpoints
        """
        request: Dict[str, Any] = {
            "ReplicationGroupId": replication_group_id,
            "ReplicationGroupDescription": deploy_config.replication_group_description,
            "Engine": ENGINE_TYPE,
            "CacheNodeType": deploy_config.cache_node_type,
            "Tags": to_aws_tags(tags),
        }
        if cache_parameter_group_name:
            request["CacheParameterGroupName"] = cache_parameter_group_name
        if redis_data.subnet_groups:
            request["CacheSubnetGroupName"] = redis_data.subnet_groups[0]
        if redis_data.security_groups:
            request["SecurityGroupIds"] = list(redis_data.security_groups)

        apply_present_fields(request, deploy_config, REPLICATION_GROUP_FIELDS)

        response = self.client.create_replication_group(**request)
        replication_group = response.get("ReplicationGroup", {})
        writer, reader = resolve_endpoints(replication_group, replication_group_id)
        return CreatedReplicationGroup(
            identifier=replication_group_id,
            writer_endpoint=writer,
            reader_endpoint=reader,
        )

    @handle_aws_errors(REPLICATION_GROUP)
    def describe_replication_group(self, replication_group_id: str) -> ReplicationGroupDescription:
        """Describe a replication group and its live membership.

        Raises:
            ResourceNotFoundError: If the replication group does not exist
        """
        response = self.client.describe_replication_groups(ReplicationGroupId=replication_group_id)
        groups = response.get("ReplicationGroups", [])
        if not groups:
            raise ResourceNotFoundError(
                REPLICATION_GROUP, replication_group_id, "describe_replication_group"
            )
        return self._convert_to_model(groups[0])

    def _convert_to_model(self, replication_group: Dict[str, Any]) -> ReplicationGroupDescription:
        rg_id = replication_group.get("ReplicationGroupId", "")
        default_node_type = replication_group.get("CacheNodeType", "")
        writer, reader = resolve_endpoints(replication_group, rg_id)

        node_groups = []
        for ng in replication_group.get("NodeGroups", []):
            members = []
            raw_members = ng.get("NodeGroupMembers", [])
            # Cluster-mode groups omit CurrentRole; their first member is the primary
            has_roles = any("CurrentRole" in m for m in raw_members)
            for index, raw in enumerate(raw_members):
                cluster_id = raw.get("CacheClusterId", "")
                if has_roles:
                    is_primary = raw.get("CurrentRole", "").lower() == "primary"
                else:
                    is_primary = index == 0
                members.append(
                    ReplicationGroupMember(
                        cache_cluster_id=cluster_id,
                        node_group_id=ng.get("NodeGroupId", ""),
                        is_primary=is_primary,
                        cache_node_type=self._get_cache_node_type(cluster_id, default_node_type),
                    )
                )
            node_groups.append(NodeGroup(node_group_id=ng.get("NodeGroupId", ""), members=members))

        return ReplicationGroupDescription(
            identifier=rg_id,
            status=replication_group.get("Status", ""),
            cluster_enabled=bool(replication_group.get("ClusterEnabled", False)),
            cache_node_type=default_node_type,
            node_groups=node_groups,
            writer_endpoint=None if writer == rg_id else writer,
            reader_endpoint=None if reader == rg_id else reader,
        )

    def _get_cache_node_type(self, cache_cluster_id: str, default: str) -> str:
        try:
            clusters = self.client.describe_cache_clusters(
                CacheClusterId=cache_cluster_id
            ).get("CacheClusters", [])
        except ClientError as e:
            logger.debug(f"Could not describe cache cluster {cache_cluster_id}: {e}")
            return default
        if not clusters:
            return default
        return clusters[0].get("CacheNodeType", default)

    @handle_aws_errors(REPLICATION_GROUP)
    def modify_replication_group(
        self,
        replication_group_id: str,
        cache_node_type: Optional[str] = None,
        cache_parameter_group_name: Optional[str] = None
    ) -> None:
        request: Dict[str, Any] = {
            "ReplicationGroupId": replication_group_id,
            "ApplyImmediately": True,
        }
        if cache_node_type:
            request["CacheNodeType"] = cache_node_type
        if cache_parameter_group_name:
            request["CacheParameterGroupName"] = cache_parameter_group_name
        self.client.modify_replication_group(**request)

    @handle_aws_errors(REPLICATION_GROUP)
    def increase_replica_count(self, replication_group_id: str, new_replica_count: int) -> None:
        self.client.increase_replica_count(
            ReplicationGroupId=replication_group_id,
            NewReplicaCount=new_replica_count,
            ApplyImmediately=True,
        )

    @handle_aws_errors(REPLICATION_GROUP)
    def decrease_replica_count(self, replication_group_id: str, new_replica_count: int) -> None:
        self.client.decrease_replica_count(
            ReplicationGroupId=replication_group_id,
            NewReplicaCount=new_replica_count,
            ApplyImmediately=True,
        )

    @handle_aws_errors(REPLICATION_GROUP)
    def modify_node_group_count(
        self,
        replication_group_id: str,
        node_group_count: int,
        node_groups_to_remove: Optional[List[str]] = None
    ) -> None:
        request: Dict[str, Any] = {
            "ReplicationGroupId": replication_group_id,
            "NodeGroupCount": node_group_count,
            "ApplyImmediately": True,
        }
        if node_groups_to_remove:
            request["NodeGroupsToRemove"] = node_groups_to_remove
        self.client.modify_replication_group_shard_configuration(**request)

    @handle_aws_errors(REPLICATION_GROUP)
    def delete_replication_group(
        self,
        replication_group_id: str,
        final_snapshot_identifier: Optional[str] = None
    ) -> None:
        request: Dict[str, Any] = {
            "ReplicationGroupId": replication_group_id,
            "RetainPrimaryCluster": False,
        }
        if final_snapshot_identifier:
            request["FinalSnapshotIdentifier"] = final_snapshot_identifier
        self.client.delete_replication_group(**request)

    # Cache clusters (instances)

    @handle_aws_errors(CACHE_CLUSTER)
    def create_cache_cluster(
        self,
        cache_cluster_id: str,
        replication_group_id: str,
        cache_parameter_group_name: Optional[str],
        instance_type: str,
        promotion_tier: Optional[int],
        tags: Mapping[str, str]
    ) -> None:
        request: Dict[str, Any] = {
            "CacheClusterId": cache_cluster_id,
            "ReplicationGroupId": replication_group_id,
            "CacheNodeType": instance_type,
            "Tags": to_aws_tags(tags),
        }
        if cache_parameter_group_name:
            request["CacheParameterGroupName"] = cache_parameter_group_name
        if promotion_tier is not None:
            # ElastiCache has no per-instance failover priority
            logger.debug(f"Promotion tier {promotion_tier} for {cache_cluster_id} is not sent to ElastiCache")
        self.client.create_cache_cluster(**request)

    @handle_aws_errors(CACHE_CLUSTER)
    def delete_cache_cluster(self, cache_cluster_id: str) -> None:
        self.client.delete_cache_cluster(CacheClusterId=cache_cluster_id)

    # Waiters

    def _waiter_config(self) -> Dict[str, int]:
        delay = max(1, int(self.wait_config.poll_interval_seconds))
        max_attempts = max(1, math.ceil(self.wait_config.timeout_seconds / delay))
        return {"Delay": delay, "MaxAttempts": max_attempts}

    def _wait(self, waiter_name: str, resource_type: str, resource_id: str, condition: str, **kwargs) -> None:
        waiter = self.client.get_waiter(waiter_name)
        try:
            waiter.wait(WaiterConfig=self._waiter_config(), **kwargs)
        except WaiterError as e:
            raise WaitTimeoutError(resource_type, resource_id, condition, e)

    @handle_aws_errors(REPLICATION_GROUP)
    def wait_until_replication_group_available(self, replication_group_id: str) -> None:
        self._wait(
            "replication_group_available", REPLICATION_GROUP, replication_group_id, "available",
            ReplicationGroupId=replication_group_id,
        )

    @handle_aws_errors(REPLICATION_GROUP)
    def wait_until_replication_group_deleted(self, replication_group_id: str) -> None:
        self._wait(
            "replication_group_deleted", REPLICATION_GROUP, replication_group_id, "deleted",
            ReplicationGroupId=replication_group_id,
        )

    @handle_aws_errors(CACHE_CLUSTER)
    def wait_until_cache_cluster_available(self, cache_cluster_id: str) -> None:
        self._wait(
            "cache_cluster_available", CACHE_CLUSTER, cache_cluster_id, "available",
            CacheClusterId=cache_cluster_id,
        )

    @handle_aws_errors(CACHE_CLUSTER)
    def wait_until_cache_cluster_deleted(self, cache_cluster_id: str) -> None:
        self._wait(
            "cache_cluster_deleted", CACHE_CLUSTER, cache_cluster_id, "deleted",
            CacheClusterId=cache_cluster_id,
        )
