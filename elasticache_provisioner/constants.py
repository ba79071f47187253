"""Fixed values shared across the provisioner."""

ENGINE_TYPE = "redis"

CACHE_PARAMETER_GROUP_SUFFIX = "pg"

# Random token length used for resource naming (uniqueness, not security)
IDENTIFIER_LENGTH = 4

COMPONENT_TAGS = {
    "component_type": "redis",
    "provisioned_by": "elasticache-provisioner",
}

DEFAULT_REPLICATION_GROUP_DESCRIPTION = "Redis replication group managed by elasticache-provisioner"

# Wait defaults (overridable through the "wait" config section)
DEFAULT_WAIT_POLL_INTERVAL_SECONDS = 30
DEFAULT_WAIT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_WORKERS = 5

MIN_NODE_GROUPS = 1
MAX_NODE_GROUPS = 500

DEFAULT_STATE_FILE = "./state/redis-state.json"
