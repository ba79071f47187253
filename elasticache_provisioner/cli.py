"""CLI entry point for the ElastiCache Redis provisioner."""

import logging
from typing import Callable, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from elasticache_provisioner.aws.client import ElastiCacheProvisioningClient
from elasticache_provisioner.aws.exceptions import AWSBaseError
from elasticache_provisioner.config import (
    ProvisionerConfig,
    UpdateNodeGroupCountConfig,
    UpdateNodeTypeConfig,
    UpdateReplicaCountConfig,
    load_config,
)
from elasticache_provisioner.constants import DEFAULT_STATE_FILE
from elasticache_provisioner.orchestrator import RedisOrchestrator
from elasticache_provisioner.state import State, StateStore
from elasticache_provisioner.utils import setup_logger

app = typer.Typer(
    help="ElastiCache Redis Provisioner - Deploy, update and undeploy a Redis replication group"
)
console = Console()

ConfigOption = typer.Option(..., "--config", "-c", help="部署設定檔 (YAML) 路徑 (必填)")
StateFileOption = typer.Option(DEFAULT_STATE_FILE, "--state-file", "-s", help="狀態檔路徑")
ProfileOption = typer.Option("default", "--profile", "-p", help="AWS Profile (預設: default)")
VerboseOption = typer.Option(False, "--verbose", "-v", help="啟用詳細日誌輸出")
PollIntervalOption = typer.Option(None, "--poll-interval", help="等待輪詢間隔秒數（覆寫設定檔）")
TimeoutOption = typer.Option(None, "--timeout", help="等待逾時秒數（覆寫設定檔）")
MaxWorkersOption = typer.Option(None, "--max-workers", help="同時等待的最大工作數（覆寫設定檔）")


def _apply_wait_overrides(
    config: ProvisionerConfig,
    poll_interval: Optional[int],
    timeout: Optional[int],
    max_workers: Optional[int]
) -> None:
    if poll_interval is not None:
        config.wait.poll_interval_seconds = poll_interval
    if timeout is not None:
        config.wait.timeout_seconds = timeout
    if max_workers is not None:
        config.wait.max_workers = max_workers


def _build_orchestrator(config: ProvisionerConfig, state_store: StateStore, profile: str) -> RedisOrchestrator:
    client = ElastiCacheProvisioningClient(
        region=config.account.region,
        profile=profile,
        wait_config=config.wait,
    )
    return RedisOrchestrator(client, config, state_store)


def _execute(verbose: bool, description: str, action: Callable[[logging.Logger], None]) -> None:
    """Run a CLI action with shared logging and error-to-exit-code mapping."""
    logger = setup_logger(verbose)
    logger.info(f"=== ElastiCache Redis Provisioner: {description} ===")

    try:
        action(logger)
    except typer.Exit:
        raise
    except AWSBaseError as e:
        console.print(f"[red]錯誤：{e}[/red]")
        logger.debug("Operation failed", exc_info=True)
        raise typer.Exit(e.exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]操作已取消，已完成的步驟皆已記錄於狀態檔[/yellow]")
        logger.info("操作已取消")
        raise typer.Exit(130)
    except Exception as e:
        console.print(f"[red]未預期的錯誤：{e}[/red]")
        logger.exception("未預期的錯誤")
        raise typer.Exit(1)


def _print_state(state: State) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Field")
    table.add_column("Value")

    table.add_row("Version", str(state.version))
    table.add_row("Identifier", state.identifier or "")
    table.add_row("Cache Parameter Group", state.cache_parameter_group_name or "")
    table.add_row("Replication Group", state.replication_group_identifier or "")
    table.add_row("Writer Instance", state.writer_instance_identifier or "")
    for instance_type, identifiers in sorted(state.reader_instance_identifiers.items()):
        table.add_row(f"Readers ({instance_type})", ", ".join(identifiers))
    table.add_row("Writer Endpoint", state.writer_endpoint or "")
    table.add_row("Reader Endpoint", state.reader_endpoint or "")

    console.print(table)


@app.command()
def deploy(
    config_file: str = ConfigOption,
    state_file: str = StateFileOption,
    profile: str = ProfileOption,
    poll_interval: Optional[int] = PollIntervalOption,
    timeout: Optional[int] = TimeoutOption,
    max_workers: Optional[int] = MaxWorkersOption,
    verbose: bool = VerboseOption,
):
    """Create (or resume creating) the Redis replication group.

    Examples:
        redis-provisioner deploy -c redis.yaml -s state/redis.json
    """
    def action(logger: logging.Logger) -> None:
        config = load_config(config_file)
        _apply_wait_overrides(config, poll_interval, timeout, max_workers)
        store = StateStore(state_file)
        orchestrator = _build_orchestrator(config, store, profile)

        state = orchestrator.deploy(store.load())

        console.print("\n[bold green]✓[/bold green] Redis 叢集部署完成\n")
        _print_state(state)

    _execute(verbose, "deploy", action)


@app.command()
def undeploy(
    config_file: str = ConfigOption,
    state_file: str = StateFileOption,
    profile: str = ProfileOption,
    poll_interval: Optional[int] = PollIntervalOption,
    timeout: Optional[int] = TimeoutOption,
    max_workers: Optional[int] = MaxWorkersOption,
    verbose: bool = VerboseOption,
):
    """Delete every resource recorded in the state file."""
    def action(logger: logging.Logger) -> None:
        config = load_config(config_file)
        _apply_wait_overrides(config, poll_interval, timeout, max_workers)
        store = StateStore(state_file)
        orchestrator = _build_orchestrator(config, store, profile)

        orchestrator.undeploy(store.load())

        console.print("\n[bold green]✓[/bold green] Redis 叢集已移除")

    _execute(verbose, "undeploy", action)


@app.command("update-node-type")
def update_node_type(
    cache_node_type: str = typer.Option(..., "--node-type", "-n", help="新的節點類型，例如 cache.r6g.large"),
    parameter_group: Optional[str] = typer.Option(
        None, "--parameter-group", help="替代的參數群組名稱"
    ),
    parameter: Optional[List[str]] = typer.Option(
        None, "--parameter", help="參數覆寫，格式為 name=value，可重複指定"
    ),
    config_file: str = ConfigOption,
    state_file: str = StateFileOption,
    profile: str = ProfileOption,
    verbose: bool = VerboseOption,
):
    """Change the node type of the replication group."""
    def action(logger: logging.Logger) -> None:
        parameters = {}
        for item in parameter or []:
            if "=" not in item:
                console.print(f"[red]錯誤：無效的參數格式 '{item}'，請使用 name=value[/red]")
                raise typer.Exit(1)
            key, value = item.split("=", 1)
            parameters[key.strip()] = value.strip()

        config = load_config(config_file)
        store = StateStore(state_file)
        orchestrator = _build_orchestrator(config, store, profile)
        update_config = UpdateNodeTypeConfig(
            cache_node_type=cache_node_type,
            cache_parameter_group_name=parameter_group,
            cache_parameter_group_parameters=parameters,
        )

        state = orchestrator.update_node_type(store.load(), update_config)
        _print_state(state)

    _execute(verbose, "update-node-type", action)


@app.command("update-replica-count")
def update_replica_count(
    replicas: int = typer.Option(..., "--replicas", "-r", min=0, help="每個節點群組的複本數量"),
    config_file: str = ConfigOption,
    state_file: str = StateFileOption,
    profile: str = ProfileOption,
    verbose: bool = VerboseOption,
):
    """Change the number of replicas per node group."""
    def action(logger: logging.Logger) -> None:
        config = load_config(config_file)
        store = StateStore(state_file)
        orchestrator = _build_orchestrator(config, store, profile)

        state = orchestrator.update_replica_count(
            store.load(), UpdateReplicaCountConfig(replicas_per_node_group=replicas)
        )
        _print_state(state)

    _execute(verbose, "update-replica-count", action)


@app.command("update-node-group-count")
def update_node_group_count(
    node_groups: int = typer.Option(..., "--node-groups", "-g", help="節點群組 (shard) 數量 (1-500)"),
    config_file: str = ConfigOption,
    state_file: str = StateFileOption,
    profile: str = ProfileOption,
    verbose: bool = VerboseOption,
):
    """Reshard a cluster-mode replication group."""
    def action(logger: logging.Logger) -> None:
        update_config = UpdateNodeGroupCountConfig(num_node_groups=node_groups)
        config = load_config(config_file)
        store = StateStore(state_file)
        orchestrator = _build_orchestrator(config, store, profile)

        state = orchestrator.update_node_group_count(store.load(), update_config)
        _print_state(state)

    _execute(verbose, "update-node-group-count", action)


@app.command("show-state")
def show_state(
    state_file: str = StateFileOption,
    verbose: bool = VerboseOption,
):
    """Print the persisted state."""
    def action(logger: logging.Logger) -> None:
        _print_state(StateStore(state_file).load())

    _execute(verbose, "show-state", action)


if __name__ == "__main__":
    app()
