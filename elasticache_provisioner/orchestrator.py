"""Deploy, undeploy and update workflows for a Redis replication group.

Every step checks the persisted state before acting and records its result
right after the cloud call returns, so an interrupted run can simply be
started again. Creation calls are issued one at a time from the calling
thread; only the waits run concurrently.
"""

import logging
from typing import Dict, List, Optional, Set

from elasticache_provisioner.aws.client import (
    CACHE_CLUSTER,
    REPLICATION_GROUP,
    ElastiCacheProvisioningClient,
)
from elasticache_provisioner.aws.exceptions import ConfigurationConflictError, ResourceNotFoundError
from elasticache_provisioner.config import (
    ProvisionerConfig,
    UpdateNodeGroupCountConfig,
    UpdateNodeTypeConfig,
    UpdateReplicaCountConfig,
)
from elasticache_provisioner.constants import (
    CACHE_PARAMETER_GROUP_SUFFIX,
    COMPONENT_TAGS,
    ENGINE_TYPE,
    IDENTIFIER_LENGTH,
)
from elasticache_provisioner.reconciler import StateReconciler
from elasticache_provisioner.runner import WaitTask, run_wait_tasks
from elasticache_provisioner.state import State, StateStore
from elasticache_provisioner.utils import generate_random_id, join_by_hyphen, merge_tags

logger = logging.getLogger(__name__)


class RedisOrchestrator:
    """Idempotent, resumable provisioning workflows.

    Each public method takes the current :class:`State`, mutates it as steps
    complete, saves it through the store after every progress change and
    returns it.
    """

    def __init__(
        self,
        client: ElastiCacheProvisioningClient,
        config: ProvisionerConfig,
        state_store: StateStore,
        reconciler: Optional[StateReconciler] = None
    ):
        self.client = client
        self.config = config
        self.state_store = state_store
        self.reconciler = reconciler or StateReconciler(client, state_store)

    @property
    def base_name(self) -> str:
        return join_by_hyphen(self.config.component.component_name, self.config.component.env_name)

    def merged_tags(self) -> Dict[str, str]:
        return merge_tags([
            self.config.deploy.tags,
            self.config.account.tags,
            COMPONENT_TAGS,
        ])

    def _checkpoint(self, state: State) -> None:
        self.state_store.save(state)

    def _run(self, tasks: List[WaitTask]) -> None:
        run_wait_tasks(tasks, self.config.wait.max_workers)

    # Deploy

    def deploy(self, state: State) -> State:
        """Create whatever part of the replication group is still missing.

        Args:
            state: Persisted state (possibly from an interrupted run)

        Returns:
            Updated state
        """
        tags = self.merged_tags()

        if state.identifier is None:
            state.identifier = generate_random_id(IDENTIFIER_LENGTH)
            if state.deploy_config is None:
                state.deploy_config = self.config.deploy.to_dict()
            logger.info(f"Generated deployment identifier: {state.identifier}")
            self._checkpoint(state)

        cache_parameter_group_name = self._ensure_cache_parameter_group(state, tags)
        replication_group_id = self._ensure_replication_group(state, tags, cache_parameter_group_name)

        tasks: List[WaitTask] = []
        tasks.extend(self._create_writer_instance(state, tags, replication_group_id, cache_parameter_group_name))
        tasks.extend(self._create_reader_instances(state, tags, replication_group_id, cache_parameter_group_name))

        self._run(tasks)

        logger.info("redis cluster deployment completed successfully")
        return state

    def _ensure_cache_parameter_group(self, state: State, tags: Dict[str, str]) -> str:
        if self.config.deploy.cache_parameter_group_name:
            logger.debug(
                f"Using externally managed cache parameter group: {self.config.deploy.cache_parameter_group_name}"
            )
            return self.config.deploy.cache_parameter_group_name

        if state.cache_parameter_group_name is None:
            name = join_by_hyphen(self.base_name, CACHE_PARAMETER_GROUP_SUFFIX, state.identifier)
            family = self.config.deploy.cache_parameter_group_family or ENGINE_TYPE + self.config.deploy.version
            logger.info(f"Creating cache parameter group: {name} (family={family})")
            self.client.create_cache_parameter_group(name, family, tags)
            state.cache_parameter_group_name = name
            self._checkpoint(state)

        return state.cache_parameter_group_name

    def _ensure_replication_group(
        self,
        state: State,
        tags: Dict[str, str],
        cache_parameter_group_name: str
    ) -> str:
        replication_group_id = state.replication_group_identifier

        if replication_group_id is None:
            replication_group_id = join_by_hyphen(self.base_name, state.identifier)
            logger.info(f"Creating Replication group: {replication_group_id}")
            created = self.client.create_replication_group(
                replication_group_id,
                cache_parameter_group_name,
                tags,
                self.config.deploy,
                self.config.redis,
            )
            state.replication_group_identifier = created.identifier
            state.writer_endpoint = created.writer_endpoint
            state.reader_endpoint = created.reader_endpoint
            self._checkpoint(state)
            self._wait_for_replication_group(state)
        elif self._endpoint_pending(state) or self._instances_missing(state):
            # Created by an earlier run that may have stopped before the group was ready
            self._wait_for_replication_group(state)

        return replication_group_id

    @staticmethod
    def _endpoint_pending(state: State) -> bool:
        return state.writer_endpoint is None or state.writer_endpoint == state.replication_group_identifier

    def _instances_missing(self, state: State) -> bool:
        if state.writer_instance_identifier is None:
            return True
        return any(
            state.reader_count(reader.instance_type) < reader.instance_count
            for reader in self.config.deploy.readers
        )

    def _wait_for_replication_group(self, state: State) -> None:
        replication_group_id = state.replication_group_identifier
        logger.info(f"Waiting for Replication group to become available: {replication_group_id}")
        self.client.wait_until_replication_group_available(replication_group_id)
        logger.info(f"Replication group is now available: {replication_group_id}")

        if self._endpoint_pending(state):
            description = self.client.describe_replication_group(replication_group_id)
            if description.writer_endpoint:
                state.writer_endpoint = description.writer_endpoint
                state.reader_endpoint = description.reader_endpoint or description.writer_endpoint
                self._checkpoint(state)
            else:
                logger.warning(f"Endpoint for {replication_group_id} is still pending")

    def _new_instance_id(self, state: State) -> str:
        return join_by_hyphen(self.base_name, generate_random_id(IDENTIFIER_LENGTH), state.identifier)

    def _create_writer_instance(
        self,
        state: State,
        tags: Dict[str, str],
        replication_group_id: str,
        cache_parameter_group_name: str
    ) -> List[WaitTask]:
        if state.writer_instance_identifier is not None:
            return []

        writer = self.config.deploy.writer
        instance_id = self._new_instance_id(state)
        logger.info(f"Creating redis writer instance: {instance_id}")
        self.client.create_cache_cluster(
            instance_id,
            replication_group_id,
            cache_parameter_group_name,
            writer.instance_type,
            writer.promotion_tier,
            tags,
        )
        state.writer_instance_identifier = instance_id
        self._checkpoint(state)

        return [self._available_task("writer", instance_id)]

    def _create_reader_instances(
        self,
        state: State,
        tags: Dict[str, str],
        replication_group_id: str,
        cache_parameter_group_name: str
    ) -> List[WaitTask]:
        tasks = []
        for reader in self.config.deploy.readers:
            existing = state.reader_count(reader.instance_type)
            shortfall = reader.instance_count - existing
            if shortfall <= 0:
                logger.debug(
                    f"Reader type {reader.instance_type}: {existing} present, "
                    f"{reader.instance_count} desired, nothing to create"
                )
                continue

            logger.info(f"Creating {shortfall} reader instance(s) of type {reader.instance_type}")
            for _ in range(shortfall):
                instance_id = self._new_instance_id(state)
                logger.info(f"Creating redis reader instance: {instance_id}")
                self.client.create_cache_cluster(
                    instance_id,
                    replication_group_id,
                    cache_parameter_group_name,
                    reader.instance_type,
                    reader.promotion_tier,
                    tags,
                )
                state.add_reader(reader.instance_type, instance_id)
                self._checkpoint(state)
                tasks.append(self._available_task("reader", instance_id))

        return tasks

    def _available_task(self, role: str, instance_id: str) -> WaitTask:
        def wait() -> None:
            logger.info(f"Waiting for redis {role} instance to become available: {instance_id}")
            self.client.wait_until_cache_cluster_available(instance_id)
            logger.info(f"Redis {role} instance is now available: {instance_id}")

        return WaitTask(description=f"{role} instance {instance_id} available", action=wait)

    # Undeploy

    def undeploy(self, state: State) -> State:
        """Delete every resource recorded in the state, in dependency order.

        Args:
            state: Persisted state

        Returns:
            Updated state (empty of resources on success)
        """
        if state.is_empty():
            logger.info("Nothing recorded in state, nothing to undeploy")
            return state

        owned = self._replication_group_owned_members(state)

        tasks: List[WaitTask] = []
        tasks.extend(self._delete_reader_instances(state, owned))
        tasks.extend(self._delete_writer_instance(state, owned))

        # Hard barrier: every instance deletion must be confirmed first
        self._run(tasks)

        self._delete_replication_group(state, owned)
        self._delete_cache_parameter_group(state)

        logger.info("redis cluster undeployment completed successfully")
        return state

    def _replication_group_owned_members(self, state: State) -> Set[str]:
        """Members that only go away together with their replication group.

        ElastiCache rejects DeleteCacheCluster for a primary and for every
        member of a cluster-mode replication group.
        """
        replication_group_id = state.replication_group_identifier
        if replication_group_id is None:
            return set()

        try:
            description = self.client.describe_replication_group(replication_group_id)
        except ResourceNotFoundError:
            logger.warning(f"{REPLICATION_GROUP} [{replication_group_id}] no longer exists")
            return set()

        return {
            member.cache_cluster_id
            for member in description.members
            if member.is_primary or description.cluster_enabled
        }

    def _delete_instance(self, instance_id: str) -> bool:
        """Issue a cache cluster deletion; False when it is already gone."""
        try:
            self.client.delete_cache_cluster(instance_id)
        except ResourceNotFoundError:
            logger.warning(f"{CACHE_CLUSTER} [{instance_id}] already deleted")
            return False
        return True

    def _delete_reader_instances(self, state: State, owned: Set[str]) -> List[WaitTask]:
        tasks = []
        readers = [
            (instance_type, instance_id)
            for instance_type, identifiers in state.reader_instance_identifiers.items()
            for instance_id in identifiers
        ]
        for instance_type, instance_id in readers:
            if instance_id in owned:
                logger.info(f"Redis reader instance {instance_id} is deleted with its Replication group")
                continue
            logger.info(f"Deleting redis reader instance: {instance_id}")
            if not self._delete_instance(instance_id):
                state.remove_reader(instance_type, instance_id)
                self._checkpoint(state)
                continue
            tasks.append(self._deleted_task(
                "reader",
                instance_id,
                on_success=self._reader_removed(state, instance_type, instance_id),
            ))
        return tasks

    def _reader_removed(self, state: State, instance_type: str, instance_id: str):
        def remove() -> None:
            state.remove_reader(instance_type, instance_id)
            self._checkpoint(state)
        return remove

    def _delete_writer_instance(self, state: State, owned: Set[str]) -> List[WaitTask]:
        instance_id = state.writer_instance_identifier
        if instance_id is None:
            return []
        if instance_id in owned:
            logger.info(f"Redis writer instance {instance_id} is deleted with its Replication group")
            return []

        def clear() -> None:
            state.writer_instance_identifier = None
            self._checkpoint(state)

        logger.info(f"Deleting redis writer instance: {instance_id}")
        if not self._delete_instance(instance_id):
            clear()
            return []
        return [self._deleted_task("writer", instance_id, on_success=clear)]

    def _deleted_task(self, role: str, instance_id: str, on_success) -> WaitTask:
        def wait() -> None:
            logger.info(f"Waiting for redis {role} instance to become deleted: {instance_id}")
            self.client.wait_until_cache_cluster_deleted(instance_id)
            logger.info(f"Redis {role} instance is now deleted: {instance_id}")

        return WaitTask(
            description=f"{role} instance {instance_id} deleted",
            action=wait,
            on_success=on_success,
        )

    def _delete_replication_group(self, state: State, owned: Set[str]) -> None:
        replication_group_id = state.replication_group_identifier
        if replication_group_id is None:
            return

        logger.info(f"Deleting Replication group: {replication_group_id}")
        try:
            self.client.delete_replication_group(
                replication_group_id,
                self.config.deploy.deletion.final_snapshot_identifier,
            )
        except ResourceNotFoundError:
            logger.warning(f"{REPLICATION_GROUP} [{replication_group_id}] already deleted")
        else:
            logger.info(f"Waiting for Replication group to become deleted: {replication_group_id}")
            self.client.wait_until_replication_group_deleted(replication_group_id)
            logger.info(f"Replication group is now deleted: {replication_group_id}")

        if state.writer_instance_identifier in owned:
            state.writer_instance_identifier = None
        for instance_type, identifiers in list(state.reader_instance_identifiers.items()):
            for instance_id in list(identifiers):
                if instance_id in owned:
                    state.remove_reader(instance_type, instance_id)

        state.replication_group_identifier = None
        state.writer_endpoint = None
        state.reader_endpoint = None
        self._checkpoint(state)

    def _delete_cache_parameter_group(self, state: State) -> None:
        name = state.cache_parameter_group_name
        if name is None:
            return

        logger.info(f"Deleting cache parameter group: {name}")
        try:
            self.client.delete_cache_parameter_group(name)
        except ResourceNotFoundError:
            logger.warning(f"Cache parameter group [{name}] already deleted")

        state.cache_parameter_group_name = None
        self._checkpoint(state)

    # Updates

    def _require_replication_group(self, state: State, operation: str, recorded_id: Optional[str]) -> str:
        if state.replication_group_identifier is None:
            raise ResourceNotFoundError(REPLICATION_GROUP, recorded_id or "<none recorded>", operation)
        return state.replication_group_identifier

    def update_node_type(self, state: State, update_config: UpdateNodeTypeConfig) -> State:
        """Change the node type of every member in the replication group.

        Args:
            state: Persisted state
            update_config: New node type and optional parameter group change

        Returns:
            Updated state
        """
        self._check_parameter_group_update(state, update_config)

        recorded_id = state.replication_group_identifier
        state = self.reconciler.reconcile_state(state)
        replication_group_id = self._require_replication_group(state, "update_node_type", recorded_id)

        parameter_group_name = self._resolve_parameter_group_update(state, update_config)

        logger.info(
            f"Changing node type of Replication group {replication_group_id} to {update_config.cache_node_type}"
        )
        self.client.modify_replication_group(
            replication_group_id,
            cache_node_type=update_config.cache_node_type,
            cache_parameter_group_name=parameter_group_name,
        )

        if state.deploy_config is not None:
            state.deploy_config["cache_node_type"] = update_config.cache_node_type
            if parameter_group_name:
                state.deploy_config["cache_parameter_group_name"] = parameter_group_name
        self._checkpoint(state)

        logger.info(f"Waiting for Replication group to become available: {replication_group_id}")
        self.client.wait_until_replication_group_available(replication_group_id)

        return self.reconciler.reconcile_state(state)

    def _check_parameter_group_update(self, state: State, update_config: UpdateNodeTypeConfig) -> None:
        """Reject parameter group changes that cannot be applied.

        Runs against the recorded snapshot before anything is reconciled or
        persisted, so a conflict leaves the state untouched.

        Raises:
            ConfigurationConflictError: If parameters of an externally managed
                group are to be changed without a replacement name, or no
                managed group is recorded to modify
        """
        if not update_config.cache_parameter_group_parameters:
            return

        external_name = (state.deploy_config or {}).get("cache_parameter_group_name")
        new_name = update_config.cache_parameter_group_name

        if external_name:
            if not new_name or new_name == external_name:
                raise ConfigurationConflictError(
                    external_name,
                    "update_node_type",
                    "外部管理的參數群組無法在原地修改參數，且未提供替代的參數群組名稱",
                )
            return

        if state.cache_parameter_group_name is None and not new_name:
            raise ConfigurationConflictError(
                state.replication_group_identifier or "<none>",
                "update_node_type",
                "狀態中沒有可修改的參數群組",
            )

    def _resolve_parameter_group_update(self, state: State, update_config: UpdateNodeTypeConfig) -> Optional[str]:
        """Decide how the parameter group binding changes.

        Returns:
            The parameter group name to bind, or None to keep the current one
        """
        snapshot = state.deploy_config or {}
        external_name = snapshot.get("cache_parameter_group_name")
        new_name = update_config.cache_parameter_group_name
        new_parameters = update_config.cache_parameter_group_parameters

        if external_name:
            if new_name and new_name != external_name:
                logger.info(f"Switching cache parameter group from {external_name} to {new_name}")
                return new_name
            return None

        current_name = state.cache_parameter_group_name
        if new_name and new_name != current_name:
            logger.info(f"Switching cache parameter group from {current_name} to {new_name}")
            return new_name
        if new_parameters:
            logger.info(f"Updating cache parameter group configuration: {current_name}")
            self.client.modify_cache_parameter_group(current_name, new_parameters)
        return None

    def update_replica_count(self, state: State, update_config: UpdateReplicaCountConfig) -> State:
        """Grow or shrink the number of replicas per node group.

        Args:
            state: Persisted state
            update_config: Desired replicas per node group

        Returns:
            Updated state
        """
        recorded_id = state.replication_group_identifier
        state = self.reconciler.reconcile_state(state)
        replication_group_id = self._require_replication_group(state, "update_replica_count", recorded_id)

        description = self.client.describe_replication_group(replication_group_id)
        current = description.replicas_per_node_group
        desired = update_config.replicas_per_node_group

        if desired == current:
            logger.info(f"Replication group {replication_group_id} already has {current} replica(s)")
            return state

        if desired > current:
            logger.info(f"Increasing replica count of {replication_group_id} from {current} to {desired}")
            self.client.increase_replica_count(replication_group_id, desired)
        else:
            logger.info(f"Decreasing replica count of {replication_group_id} from {current} to {desired}")
            self.client.decrease_replica_count(replication_group_id, desired)

        if state.deploy_config is not None:
            state.deploy_config["replicas_per_node_group"] = desired
            self._checkpoint(state)

        logger.info(f"Waiting for Replication group to become available: {replication_group_id}")
        self.client.wait_until_replication_group_available(replication_group_id)

        return self.reconciler.reconcile_state(state)

    def update_node_group_count(self, state: State, update_config: UpdateNodeGroupCountConfig) -> State:
        """Reshard a cluster-mode replication group to a new node group count."""
        recorded_id = state.replication_group_identifier
        state = self.reconciler.reconcile_state(state)
        replication_group_id = self._require_replication_group(state, "update_node_group_count", recorded_id)

        description = self.client.describe_replication_group(replication_group_id)
        if not description.cluster_enabled:
            raise ConfigurationConflictError(
                replication_group_id,
                "update_node_group_count",
                "僅支援啟用叢集模式 (cluster mode) 的複寫群組",
            )

        current = len(description.node_groups)
        desired = update_config.num_node_groups
        if desired == current:
            logger.info(f"Replication group {replication_group_id} already has {current} node group(s)")
            return state

        to_remove = None
        if desired < current:
            to_remove = [group.node_group_id for group in description.node_groups[desired:]]
        logger.info(f"Changing node group count of {replication_group_id} from {current} to {desired}")
        self.client.modify_node_group_count(replication_group_id, desired, to_remove)

        if state.deploy_config is not None:
            state.deploy_config["num_node_groups"] = desired
            self._checkpoint(state)

        logger.info(f"Waiting for Replication group to become available: {replication_group_id}")
        self.client.wait_until_replication_group_available(replication_group_id)

        return self.reconciler.reconcile_state(state)
