"""Deploy and update configuration loaded from YAML files."""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from elasticache_provisioner.aws.exceptions import ConfigurationError
from elasticache_provisioner.constants import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_REPLICATION_GROUP_DESCRIPTION,
    DEFAULT_WAIT_POLL_INTERVAL_SECONDS,
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    MAX_NODE_GROUPS,
    MIN_NODE_GROUPS,
)

logger = logging.getLogger(__name__)


@dataclass
class ComponentMetadata:
    component_name: str
    env_name: str


@dataclass
class AwsAccountData:
    region: str
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class RedisData:
    subnet_groups: List[str] = field(default_factory=list)
    security_groups: List[str] = field(default_factory=list)


@dataclass
class WriterConfig:
    instance_type: str
    promotion_tier: Optional[int] = None


@dataclass
class ReaderConfig:
    instance_type: str
    instance_count: int = 0
    promotion_tier: Optional[int] = None


@dataclass
class DeletionConfig:
    final_snapshot_identifier: Optional[str] = None


@dataclass
class WaitConfig:
    """Polling parameters shared by every wait action."""

    poll_interval_seconds: int = DEFAULT_WAIT_POLL_INTERVAL_SECONDS
    timeout_seconds: int = DEFAULT_WAIT_TIMEOUT_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS


@dataclass
class DeployConfig:
    """Desired topology of the replication group."""

    version: str
    cache_node_type: str
    writer: WriterConfig
    readers: List[ReaderConfig] = field(default_factory=list)
    cache_parameter_group_family: Optional[str] = None
    cache_parameter_group_name: Optional[str] = None
    replication_group_description: str = DEFAULT_REPLICATION_GROUP_DESCRIPTION
    num_node_groups: Optional[int] = None
    replicas_per_node_group: Optional[int] = None
    automatic_failover_enabled: Optional[bool] = None
    multi_az_enabled: Optional[bool] = None
    transit_encryption_enabled: Optional[bool] = None
    at_rest_encryption_enabled: Optional[bool] = None
    snapshot_retention_limit: Optional[int] = None
    snapshot_window: Optional[str] = None
    preferred_maintenance_window: Optional[str] = None
    notification_topic_arn: Optional[str] = None
    auto_minor_version_upgrade: Optional[bool] = None
    preferred_cache_cluster_azs: Optional[List[str]] = None
    kms_key_id: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    deletion: DeletionConfig = field(default_factory=DeletionConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProvisionerConfig:
    component: ComponentMetadata
    account: AwsAccountData
    redis: RedisData
    deploy: DeployConfig
    wait: WaitConfig = field(default_factory=WaitConfig)


@dataclass
class UpdateNodeTypeConfig:
    cache_node_type: str
    cache_parameter_group_name: Optional[str] = None
    cache_parameter_group_parameters: Dict[str, str] = field(default_factory=dict)


@dataclass
class UpdateReplicaCountConfig:
    replicas_per_node_group: int


@dataclass
class UpdateNodeGroupCountConfig:
    num_node_groups: int

    def __post_init__(self):
        if not MIN_NODE_GROUPS <= self.num_node_groups <= MAX_NODE_GROUPS:
            raise ConfigurationError(
                f"num_node_groups 必須介於 {MIN_NODE_GROUPS} 與 {MAX_NODE_GROUPS} 之間"
                f"（目前為 {self.num_node_groups}）"
            )


def _require(section: Dict[str, Any], key: str, where: str) -> Any:
    if key not in section or section[key] is None:
        raise ConfigurationError(f"缺少必要欄位：{where}.{key}")
    return section[key]


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{key} 必須是物件（mapping）")
    return value


def parse_deploy_config(raw: Dict[str, Any]) -> DeployConfig:
    """Build a DeployConfig from the ``deploy`` section of the config file.

    Args:
        raw: Parsed ``deploy`` mapping

    Returns:
        DeployConfig instance

    Raises:
        ConfigurationError: If required keys are missing or reader counts are negative
    """
    writer_raw = _require(raw, "writer", "deploy")
    writer = WriterConfig(
        instance_type=_require(writer_raw, "instance_type", "deploy.writer"),
        promotion_tier=writer_raw.get("promotion_tier"),
    )

    readers = []
    for index, reader_raw in enumerate(raw.get("readers") or []):
        where = f"deploy.readers[{index}]"
        raw_count = reader_raw.get("instance_count", 0)
        try:
            count = int(raw_count)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{where}.instance_count 必須是整數（目前為 {raw_count!r}）", e)
        if count < 0:
            raise ConfigurationError(f"{where}.instance_count 不可為負數（目前為 {count}）")
        readers.append(
            ReaderConfig(
                instance_type=_require(reader_raw, "instance_type", where),
                instance_count=count,
                promotion_tier=reader_raw.get("promotion_tier"),
            )
        )

    known = {
        "version", "cache_node_type", "writer", "readers", "tags", "deletion",
    }
    optional = {
        key: value for key, value in raw.items()
        if key not in known and key in DeployConfig.__dataclass_fields__
    }
    unknown = sorted(set(raw) - known - set(DeployConfig.__dataclass_fields__))
    if unknown:
        logger.warning(f"Ignoring unknown deploy config keys: {unknown}")

    deletion_raw = raw.get("deletion") or {}

    return DeployConfig(
        version=str(_require(raw, "version", "deploy")),
        cache_node_type=_require(raw, "cache_node_type", "deploy"),
        writer=writer,
        readers=readers,
        tags={str(k): str(v) for k, v in (raw.get("tags") or {}).items()},
        deletion=DeletionConfig(
            final_snapshot_identifier=deletion_raw.get("final_snapshot_identifier")
        ),
        **optional,
    )


def parse_config(raw: Dict[str, Any]) -> ProvisionerConfig:
    """Build a ProvisionerConfig from a parsed YAML document."""
    if not isinstance(raw, dict):
        raise ConfigurationError("設定檔最上層必須是物件（mapping）")

    component = _section(raw, "component")
    account = _section(raw, "account")
    redis = _section(raw, "redis")
    wait = _section(raw, "wait")

    return ProvisionerConfig(
        component=ComponentMetadata(
            component_name=_require(component, "component_name", "component"),
            env_name=_require(component, "env_name", "component"),
        ),
        account=AwsAccountData(
            region=_require(account, "region", "account"),
            tags={str(k): str(v) for k, v in (account.get("tags") or {}).items()},
        ),
        redis=RedisData(
            subnet_groups=list(redis.get("subnet_groups") or []),
            security_groups=list(redis.get("security_groups") or []),
        ),
        deploy=parse_deploy_config(_section(raw, "deploy")),
        wait=WaitConfig(
            poll_interval_seconds=int(
                wait.get("poll_interval_seconds", DEFAULT_WAIT_POLL_INTERVAL_SECONDS)
            ),
            timeout_seconds=int(wait.get("timeout_seconds", DEFAULT_WAIT_TIMEOUT_SECONDS)),
            max_workers=int(wait.get("max_workers", DEFAULT_MAX_WORKERS)),
        ),
    )


def load_config(file_path: str) -> ProvisionerConfig:
    """Load the provisioner configuration from a YAML file.

    Args:
        file_path: Path to the YAML configuration

    Returns:
        ProvisionerConfig instance
    """
    logger.info(f"Loading configuration from {file_path}")
    try:
        with open(file_path, "r", encoding="UTF-8") as file:
            raw = yaml.safe_load(file)
    except OSError as e:
        raise ConfigurationError(f"無法讀取設定檔 {file_path}", e)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML 格式錯誤：{e}", e)
    return parse_config(raw or {})
