"""Unit tests for RedisOrchestrator deploy/undeploy/update workflows."""

import pytest

from elasticache_provisioner.aws.exceptions import (
    ConfigurationConflictError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    WaitTimeoutError,
)
from elasticache_provisioner.aws.models import CreatedReplicationGroup
from elasticache_provisioner.config import (
    ReaderConfig,
    UpdateNodeGroupCountConfig,
    UpdateNodeTypeConfig,
    UpdateReplicaCountConfig,
)
from elasticache_provisioner.constants import COMPONENT_TAGS
from elasticache_provisioner.orchestrator import RedisOrchestrator
from elasticache_provisioner.state import State

from conftest import make_description


def _created_instance_types(client):
    return [c.args[3] for c in client.create_cache_cluster.call_args_list]


def _deployed_state(store, **overrides):
    values = dict(
        identifier="ab12",
        cache_parameter_group_name="orders-qa-pg-ab12",
        replication_group_identifier="orders-qa-ab12",
        writer_endpoint="orders-qa-ab12.cache.amazonaws.com:6379",
        reader_endpoint="orders-qa-ab12-ro.cache.amazonaws.com:6379",
        deploy_config={"cache_parameter_group_name": None, "cache_node_type": "cache.r6g.large"},
    )
    values.update(overrides)
    state = State(**values)
    store.save(state)
    return state


class TestDeploy:
    """Test deploy()."""

    def test_first_deploy_creates_every_resource(self, client, config, store):
        orchestrator = RedisOrchestrator(client, config, store)

        state = orchestrator.deploy(store.load())

        assert len(state.identifier) == 4
        expected_tags = {"env": "prod", "team": "x", **COMPONENT_TAGS}

        pg_name = f"orders-qa-pg-{state.identifier}"
        client.create_cache_parameter_group.assert_called_once_with(pg_name, "redis7", expected_tags)

        rg_id = f"orders-qa-{state.identifier}"
        client.create_replication_group.assert_called_once_with(
            rg_id, pg_name, expected_tags, config.deploy, config.redis
        )
        client.wait_until_replication_group_available.assert_called_once_with(rg_id)

        assert client.create_cache_cluster.call_count == 3
        assert client.wait_until_cache_cluster_available.call_count == 3
        writer_call = client.create_cache_cluster.call_args_list[0]
        assert writer_call.args[1:] == (rg_id, pg_name, "cache.r6g.large", 0, expected_tags)

        assert state.cache_parameter_group_name == pg_name
        assert state.replication_group_identifier == rg_id
        assert state.writer_instance_identifier is not None
        assert state.reader_count("cache.r6g.large") == 2
        assert state.writer_endpoint == f"{rg_id}.cache.amazonaws.com:6379"
        assert state.deploy_config["cache_node_type"] == "cache.r6g.large"
        assert store.load() == state

    def test_second_deploy_creates_nothing(self, client, config, store):
        orchestrator = RedisOrchestrator(client, config, store)
        state = orchestrator.deploy(store.load())
        client.reset_mock()

        orchestrator.deploy(state)

        client.create_cache_parameter_group.assert_not_called()
        client.create_replication_group.assert_not_called()
        client.create_cache_cluster.assert_not_called()

    def test_resume_after_replication_group_created(self, client, config, store):
        state = _deployed_state(store)
        orchestrator = RedisOrchestrator(client, config, store)

        orchestrator.deploy(state)

        client.create_cache_parameter_group.assert_not_called()
        client.create_replication_group.assert_not_called()
        assert _created_instance_types(client) == ["cache.r6g.large"] * 3
        for created in client.create_cache_cluster.call_args_list:
            assert created.args[1] == "orders-qa-ab12"
            assert created.args[2] == "orders-qa-pg-ab12"
        assert state.cache_parameter_group_name == "orders-qa-pg-ab12"
        assert state.replication_group_identifier == "orders-qa-ab12"

    def test_resume_waits_for_group_before_creating_instances(self, client, config, store):
        state = _deployed_state(store)
        orchestrator = RedisOrchestrator(client, config, store)

        orchestrator.deploy(state)

        client.wait_until_replication_group_available.assert_called_once_with("orders-qa-ab12")
        names = [c[0] for c in client.mock_calls]
        assert names.index("wait_until_replication_group_available") < names.index("create_cache_cluster")

    def test_reader_shortfall_only(self, client, config, store):
        config.deploy.readers = [ReaderConfig(instance_type="T", instance_count=5)]
        existing = ["orders-qa-r1-ab12", "orders-qa-r2-ab12"]
        state = _deployed_state(
            store,
            writer_instance_identifier="orders-qa-w1-ab12",
            reader_instance_identifiers={"T": list(existing)},
        )
        orchestrator = RedisOrchestrator(client, config, store)

        orchestrator.deploy(state)

        assert _created_instance_types(client) == ["T", "T", "T"]
        assert state.reader_instance_identifiers["T"][:2] == existing
        assert len(state.reader_instance_identifiers["T"]) == 5

    def test_surplus_readers_are_kept(self, client, config, store):
        config.deploy.readers = [ReaderConfig(instance_type="T", instance_count=1)]
        state = _deployed_state(
            store,
            writer_instance_identifier="orders-qa-w1-ab12",
            reader_instance_identifiers={"T": ["r1", "r2", "r3"]},
        )

        RedisOrchestrator(client, config, store).deploy(state)

        client.create_cache_cluster.assert_not_called()
        client.delete_cache_cluster.assert_not_called()
        assert state.reader_instance_identifiers == {"T": ["r1", "r2", "r3"]}

    def test_external_parameter_group_is_not_created(self, client, config, store):
        config.deploy.cache_parameter_group_name = "shared-redis7"
        orchestrator = RedisOrchestrator(client, config, store)

        state = orchestrator.deploy(store.load())

        client.create_cache_parameter_group.assert_not_called()
        assert client.create_replication_group.call_args.args[1] == "shared-redis7"
        assert state.cache_parameter_group_name is None

    def test_pending_endpoint_is_requeried(self, client, config, store):
        client.create_replication_group.side_effect = (
            lambda rg_id, *args: CreatedReplicationGroup(rg_id, rg_id, rg_id)
        )
        client.describe_replication_group.side_effect = lambda rg_id: make_description(rg_id, [])
        orchestrator = RedisOrchestrator(client, config, store)

        state = orchestrator.deploy(store.load())

        rg_id = state.replication_group_identifier
        assert state.writer_endpoint == f"{rg_id}.cache.amazonaws.com:6379"
        assert state.reader_endpoint == f"{rg_id}-ro.cache.amazonaws.com:6379"

    def test_already_exists_leaves_state_unchanged(self, client, config, store):
        client.create_replication_group.side_effect = ResourceAlreadyExistsError(
            "replication group", "orders-qa-ab12", "create_replication_group"
        )
        orchestrator = RedisOrchestrator(client, config, store)

        with pytest.raises(ResourceAlreadyExistsError):
            orchestrator.deploy(store.load())

        persisted = store.load()
        assert persisted.replication_group_identifier is None
        assert persisted.cache_parameter_group_name is not None
        client.create_cache_cluster.assert_not_called()

    def test_wait_timeout_keeps_created_instances(self, client, config, store):
        client.wait_until_cache_cluster_available.side_effect = WaitTimeoutError(
            "cache cluster", "orders-qa-w1-ab12", "available"
        )
        orchestrator = RedisOrchestrator(client, config, store)

        with pytest.raises(WaitTimeoutError):
            orchestrator.deploy(store.load())

        persisted = store.load()
        assert persisted.writer_instance_identifier is not None
        assert persisted.reader_count("cache.r6g.large") == 2

        client.reset_mock()
        client.wait_until_cache_cluster_available.side_effect = None
        orchestrator.deploy(persisted)

        client.create_replication_group.assert_not_called()
        client.create_cache_cluster.assert_not_called()

    def test_merged_tags_precedence(self, client, config, store):
        orchestrator = RedisOrchestrator(client, config, store)

        assert orchestrator.merged_tags() == {"env": "prod", "team": "x", **COMPONENT_TAGS}


class TestUndeploy:
    """Test undeploy()."""

    def test_empty_state_makes_no_calls(self, client, config, store):
        orchestrator = RedisOrchestrator(client, config, store)

        state = orchestrator.undeploy(store.load())

        assert client.mock_calls == []
        assert state.is_empty()

    def test_full_undeploy_in_dependency_order(self, client, config, store):
        state = _deployed_state(
            store,
            writer_instance_identifier="orders-qa-w1-ab12",
            reader_instance_identifiers={
                "cache.r6g.large": ["orders-qa-r1-ab12"],
                "cache.r6g.xlarge": ["orders-qa-r2-ab12"],
            },
        )
        orchestrator = RedisOrchestrator(client, config, store)

        orchestrator.undeploy(state)

        deleted = sorted(c.args[0] for c in client.delete_cache_cluster.call_args_list)
        assert deleted == ["orders-qa-r1-ab12", "orders-qa-r2-ab12", "orders-qa-w1-ab12"]
        assert client.wait_until_cache_cluster_deleted.call_count == 3
        client.delete_replication_group.assert_called_once_with("orders-qa-ab12", None)
        client.wait_until_replication_group_deleted.assert_called_once_with("orders-qa-ab12")
        client.delete_cache_parameter_group.assert_called_once_with("orders-qa-pg-ab12")

        names = [c[0] for c in client.mock_calls]
        last_instance_wait = max(i for i, n in enumerate(names) if n == "wait_until_cache_cluster_deleted")
        assert names.index("delete_replication_group") > last_instance_wait
        assert names.index("delete_cache_parameter_group") > names.index("wait_until_replication_group_deleted")

        assert state.is_empty()
        assert state.writer_endpoint is None
        assert store.load() == state

    def test_partial_failure_keeps_pending_instance(self, client, config, store):
        def wait_deleted(instance_id):
            if instance_id == "orders-qa-r2-ab12":
                raise WaitTimeoutError("cache cluster", instance_id, "deleted")

        client.wait_until_cache_cluster_deleted.side_effect = wait_deleted
        state = _deployed_state(
            store,
            writer_instance_identifier="orders-qa-w1-ab12",
            reader_instance_identifiers={"cache.r6g.large": ["orders-qa-r1-ab12", "orders-qa-r2-ab12"]},
        )
        orchestrator = RedisOrchestrator(client, config, store)

        with pytest.raises(WaitTimeoutError):
            orchestrator.undeploy(state)

        client.delete_replication_group.assert_not_called()
        client.delete_cache_parameter_group.assert_not_called()
        persisted = store.load()
        assert "orders-qa-r2-ab12" in persisted.reader_instance_identifiers["cache.r6g.large"]
        assert persisted.replication_group_identifier == "orders-qa-ab12"
        assert persisted == state

    def test_already_deleted_instance_is_cleared(self, client, config, store):
        client.delete_cache_cluster.side_effect = ResourceNotFoundError(
            "cache cluster", "orders-qa-w1-ab12", "delete_cache_cluster"
        )
        state = _deployed_state(
            store,
            replication_group_identifier=None,
            cache_parameter_group_name=None,
            writer_instance_identifier="orders-qa-w1-ab12",
        )

        RedisOrchestrator(client, config, store).undeploy(state)

        client.wait_until_cache_cluster_deleted.assert_not_called()
        assert state.writer_instance_identifier is None

    def test_reconciled_primary_is_deleted_with_replication_group(self, client, config, store):
        client.describe_replication_group.return_value = make_description("orders-qa-ab12", [
            ("0001", [
                ("orders-qa-ab12-001", True, "cache.r6g.large"),
                ("orders-qa-ab12-002", False, "cache.r6g.large"),
            ]),
        ])
        state = _deployed_state(
            store,
            writer_instance_identifier="orders-qa-ab12-001",
            reader_instance_identifiers={"cache.r6g.large": ["orders-qa-ab12-002"]},
        )

        RedisOrchestrator(client, config, store).undeploy(state)

        client.delete_cache_cluster.assert_called_once_with("orders-qa-ab12-002")
        client.delete_replication_group.assert_called_once_with("orders-qa-ab12", None)
        assert state.is_empty()
        assert store.load() == state

    def test_cluster_mode_members_are_deleted_with_replication_group(self, client, config, store):
        client.describe_replication_group.return_value = make_description("orders-qa-ab12", [
            ("0001", [("orders-qa-0001-001", True, "cache.r6g.large"), ("orders-qa-0001-002", False, "cache.r6g.large")]),
            ("0002", [("orders-qa-0002-001", True, "cache.r6g.large")]),
        ], cluster_enabled=True)
        state = _deployed_state(
            store,
            writer_instance_identifier="orders-qa-0001-001",
            reader_instance_identifiers={"cache.r6g.large": ["orders-qa-0001-002", "orders-qa-0002-001"]},
        )

        RedisOrchestrator(client, config, store).undeploy(state)

        client.delete_cache_cluster.assert_not_called()
        client.wait_until_replication_group_deleted.assert_called_once_with("orders-qa-ab12")
        assert state.writer_instance_identifier is None
        assert state.reader_instance_identifiers == {}
        assert state.is_empty()

    def test_resume_only_deletes_remaining_parameter_group(self, client, config, store):
        state = _deployed_state(store, replication_group_identifier=None)

        RedisOrchestrator(client, config, store).undeploy(state)

        client.delete_cache_cluster.assert_not_called()
        client.delete_replication_group.assert_not_called()
        client.delete_cache_parameter_group.assert_called_once_with("orders-qa-pg-ab12")
        assert state.cache_parameter_group_name is None


class TestUpdates:
    """Test update workflows."""

    def _live(self, client, replicas=1, cluster_enabled=False, node_groups=1):
        groups = []
        for g in range(1, node_groups + 1):
            ng_id = f"{g:04d}"
            members = [(f"orders-qa-{ng_id}-001", True, "cache.r6g.large")]
            members += [(f"orders-qa-{ng_id}-{r + 2:03d}", False, "cache.r6g.large") for r in range(replicas)]
            groups.append((ng_id, members))
        client.describe_replication_group.return_value = make_description(
            "orders-qa-ab12", groups, cluster_enabled=cluster_enabled
        )

    def test_update_without_replication_group(self, client, config, store):
        orchestrator = RedisOrchestrator(client, config, store)

        with pytest.raises(ResourceNotFoundError):
            orchestrator.update_replica_count(store.load(), UpdateReplicaCountConfig(replicas_per_node_group=2))

    def test_update_names_replication_group_gone_out_of_band(self, client, config, store):
        client.describe_replication_group.side_effect = ResourceNotFoundError(
            "replication group", "orders-qa-ab12", "describe_replication_group"
        )
        state = _deployed_state(store)

        with pytest.raises(ResourceNotFoundError) as exc_info:
            RedisOrchestrator(client, config, store).update_replica_count(
                state, UpdateReplicaCountConfig(replicas_per_node_group=2)
            )

        assert exc_info.value.resource_id == "orders-qa-ab12"
        client.increase_replica_count.assert_not_called()

    def test_increase_replica_count(self, client, config, store):
        self._live(client, replicas=1)
        state = _deployed_state(store)

        RedisOrchestrator(client, config, store).update_replica_count(
            state, UpdateReplicaCountConfig(replicas_per_node_group=3)
        )

        client.increase_replica_count.assert_called_once_with("orders-qa-ab12", 3)
        client.decrease_replica_count.assert_not_called()
        client.wait_until_replication_group_available.assert_called_once_with("orders-qa-ab12")

    def test_decrease_replica_count(self, client, config, store):
        self._live(client, replicas=2)
        state = _deployed_state(store)

        result = RedisOrchestrator(client, config, store).update_replica_count(
            state, UpdateReplicaCountConfig(replicas_per_node_group=1)
        )

        client.decrease_replica_count.assert_called_once_with("orders-qa-ab12", 1)
        assert result.deploy_config["replicas_per_node_group"] == 1

    def test_replica_count_unchanged(self, client, config, store):
        self._live(client, replicas=2)
        state = _deployed_state(store)

        RedisOrchestrator(client, config, store).update_replica_count(
            state, UpdateReplicaCountConfig(replicas_per_node_group=2)
        )

        client.increase_replica_count.assert_not_called()
        client.decrease_replica_count.assert_not_called()

    def test_update_node_type_on_managed_parameter_group(self, client, config, store):
        self._live(client)
        state = _deployed_state(store)

        RedisOrchestrator(client, config, store).update_node_type(
            state,
            UpdateNodeTypeConfig(
                cache_node_type="cache.r6g.xlarge",
                cache_parameter_group_parameters={"maxmemory-policy": "allkeys-lru"},
            ),
        )

        client.modify_cache_parameter_group.assert_called_once_with(
            "orders-qa-pg-ab12", {"maxmemory-policy": "allkeys-lru"}
        )
        client.modify_replication_group.assert_called_once_with(
            "orders-qa-ab12", cache_node_type="cache.r6g.xlarge", cache_parameter_group_name=None
        )
        assert state.deploy_config["cache_node_type"] == "cache.r6g.xlarge"

    def test_external_parameter_group_conflict(self, client, config, store):
        self._live(client)
        state = _deployed_state(
            store,
            cache_parameter_group_name=None,
            deploy_config={"cache_parameter_group_name": "shared-redis7"},
        )
        before = store.load()

        with pytest.raises(ConfigurationConflictError) as exc_info:
            RedisOrchestrator(client, config, store).update_node_type(
                state,
                UpdateNodeTypeConfig(
                    cache_node_type="cache.r6g.xlarge",
                    cache_parameter_group_parameters={"maxmemory-policy": "allkeys-lru"},
                ),
            )

        assert exc_info.value.exit_code == 5
        assert exc_info.value.resource_id == "shared-redis7"
        client.describe_replication_group.assert_not_called()
        client.modify_replication_group.assert_not_called()
        client.modify_cache_parameter_group.assert_not_called()
        assert store.load() == before

    def test_external_parameter_group_switch(self, client, config, store):
        self._live(client)
        state = _deployed_state(
            store,
            cache_parameter_group_name=None,
            deploy_config={"cache_parameter_group_name": "shared-redis7"},
        )

        RedisOrchestrator(client, config, store).update_node_type(
            state,
            UpdateNodeTypeConfig(cache_node_type="cache.r6g.xlarge", cache_parameter_group_name="shared-redis7-v2"),
        )

        client.modify_replication_group.assert_called_once_with(
            "orders-qa-ab12", cache_node_type="cache.r6g.xlarge", cache_parameter_group_name="shared-redis7-v2"
        )
        assert state.deploy_config["cache_parameter_group_name"] == "shared-redis7-v2"
        assert state.cache_parameter_group_name is None

    def test_node_group_count_requires_cluster_mode(self, client, config, store):
        self._live(client, cluster_enabled=False)
        state = _deployed_state(store)

        with pytest.raises(ConfigurationConflictError):
            RedisOrchestrator(client, config, store).update_node_group_count(
                state, UpdateNodeGroupCountConfig(num_node_groups=3)
            )

        client.modify_node_group_count.assert_not_called()

    def test_node_group_count_shrink_removes_trailing_groups(self, client, config, store):
        self._live(client, replicas=0, cluster_enabled=True, node_groups=3)
        state = _deployed_state(store)

        RedisOrchestrator(client, config, store).update_node_group_count(
            state, UpdateNodeGroupCountConfig(num_node_groups=2)
        )

        client.modify_node_group_count.assert_called_once_with("orders-qa-ab12", 2, ["0003"])
        client.wait_until_replication_group_available.assert_called_once_with("orders-qa-ab12")
