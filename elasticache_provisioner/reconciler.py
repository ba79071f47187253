"""Re-sync persisted state against the live replication group."""

import logging
from typing import Dict, Optional

from elasticache_provisioner.aws.client import ElastiCacheProvisioningClient
from elasticache_provisioner.aws.exceptions import ResourceNotFoundError
from elasticache_provisioner.aws.models import ReplicationGroupDescription
from elasticache_provisioner.state import State, StateStore

logger = logging.getLogger(__name__)


class StateReconciler:
    """Rebuilds writer/reader membership in the state from the provider's view.

    Drift is only recorded, never repaired: when the recorded replication
    group no longer exists, its identifier is cleared and nothing else.
    """

    def __init__(self, client: ElastiCacheProvisioningClient, state_store: Optional[StateStore] = None):
        self.client = client
        self.state_store = state_store

    def reconcile_state(self, state: State) -> State:
        """Refresh the state from the live replication group.

        Args:
            state: Current persisted state

        Returns:
            The reconciled state (persisted when a store is configured)
        """
        replication_group_id = state.replication_group_identifier
        if replication_group_id is None:
            logger.debug("No replication group recorded, nothing to reconcile")
            return state

        try:
            description = self.client.describe_replication_group(replication_group_id)
        except ResourceNotFoundError:
            logger.warning(
                f"Replication group [{replication_group_id}] from state does not exist. Updating state."
            )
            state.replication_group_identifier = None
            return self._persist(state)

        logger.debug(f"Found replication group: {replication_group_id}")
        self._populate_state(description, state)
        return self._persist(state)

    def _populate_state(self, description: ReplicationGroupDescription, state: State) -> None:
        state.writer_instance_identifier = None
        state.reader_instance_identifiers = {}
        reader_counts: Dict[str, int] = {}
        writer_type = None

        # The primary of the first node group is the writer; every other member reads
        for member in description.members:
            if state.writer_instance_identifier is None and member.is_primary:
                state.writer_instance_identifier = member.cache_cluster_id
                writer_type = member.cache_node_type
                logger.debug(f"Found writer instance: {member.cache_cluster_id}")
                continue

            state.add_reader(member.cache_node_type, member.cache_cluster_id)
            reader_counts[member.cache_node_type] = reader_counts.get(member.cache_node_type, 0) + 1
            logger.debug(
                f"Found reader instance: {member.cache_cluster_id} of type: {member.cache_node_type}"
            )

        if description.writer_endpoint:
            state.writer_endpoint = description.writer_endpoint
        if description.reader_endpoint:
            state.reader_endpoint = description.reader_endpoint

        if state.deploy_config is not None:
            self._refresh_deploy_snapshot(state.deploy_config, writer_type, reader_counts)

    @staticmethod
    def _refresh_deploy_snapshot(
        snapshot: Dict,
        writer_type: Optional[str],
        reader_counts: Dict[str, int]
    ) -> None:
        previous_tiers = {
            reader.get("instance_type"): reader.get("promotion_tier")
            for reader in snapshot.get("readers") or []
        }
        if writer_type:
            writer = dict(snapshot.get("writer") or {})
            writer["instance_type"] = writer_type
            snapshot["writer"] = writer
        snapshot["readers"] = [
            {
                "instance_type": instance_type,
                "instance_count": count,
                "promotion_tier": previous_tiers.get(instance_type),
            }
            for instance_type, count in reader_counts.items()
        ]

    def _persist(self, state: State) -> State:
        if self.state_store is not None:
            self.state_store.save(state)
        return state
