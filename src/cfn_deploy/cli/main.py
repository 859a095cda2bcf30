"""Main CLI entry point."""

import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.table import Table
from rich.panel import Panel

from cfn_deploy import __version__
from cfn_deploy.application import CompanionFileChecker
from cfn_deploy.cli.scaffold import GITIGNORE_ENTRY, TEMPLATES, render_config
from cfn_deploy.config.parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE
from cfn_deploy.orchestrator.executor import DeploymentResult, ExecutionStatus
from cfn_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from cfn_deploy.orchestrator.planner import DeploymentPlan
from cfn_deploy.orchestrator.rollback import RollbackResult, RollbackStrategy
from cfn_deploy.provisioners.base import ChangeType
from cfn_deploy.provisioners.cloudformation import CloudFormationProvisioner
from cfn_deploy.state.manager import StateManager, default_state_path
from cfn_deploy.utils.aws_client import AWSClientManager
from cfn_deploy.utils.errors import DeploymentError
from cfn_deploy.utils.logging import setup_logging, get_logger

console = Console()
logger = get_logger(__name__)

CHANGE_STYLES = {
    ChangeType.CREATE: "green",
    ChangeType.UPDATE: "yellow",
    ChangeType.DELETE: "red",
    ChangeType.NO_CHANGE: "dim",
}

STATUS_STYLES = {
    "applied": "green",
    "pending": "yellow",
    "failed": "red",
    "rolled_back": "magenta",
}


@click.group()
@click.version_option(__version__, prog_name="cfn-deploy")
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region (overrides the environment region)')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, profile, region, log_level):
    """CloudFormation stage orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    setup_logging(log_level)


def load_config(config_path: str = DEFAULT_CONFIG_FILE) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        console.print("\nRun [cyan]cfn-deploy init[/cyan] to create a new configuration file.")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)


def get_state_manager(config: Config, environment: str) -> StateManager:
    """State manager for an environment's state file."""
    return StateManager(str(default_state_path(config.project.name, environment, config.base_dir)))


def create_provisioner(config: Config, client_manager: AWSClientManager) -> CloudFormationProvisioner:
    return CloudFormationProvisioner(
        client_manager.session,
        template_bucket=config.project.template_bucket,
        client=client_manager.get_client('cloudformation'),
        s3_client=client_manager.get_client('s3'),
    )


def create_orchestrator(
    config: Config,
    environment: Optional[str] = None,
    profile: Optional[str] = None,
    region: Optional[str] = None,
    with_aws: bool = False,
) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies.

    Args:
        config: Loaded configuration
        environment: Environment name; records are read only when one is given
        profile: AWS profile
        region: Region override; refused when it contradicts the environment's region
        with_aws: Create a CloudFormation provisioner
    """
    provisioner = None
    account_id = None

    if with_aws:
        env_config = config.get_environment(environment) if environment and config.environments else None
        aws_region = region or (env_config.region if env_config else config.project.region)
        client_manager = AWSClientManager(profile=profile, region=aws_region)
        provisioner = create_provisioner(config, client_manager)
        if env_config is None:
            account_id = client_manager.get_account_id()

    return DeploymentOrchestrator(
        config=config,
        environment=environment,
        state_manager=get_state_manager(config, environment) if environment else None,
        provisioner=provisioner,
        account_id=account_id,
        region=region,
    )


def fail(error: Exception) -> None:
    """Print an error and exit with status 1."""
    if isinstance(error, DeploymentError):
        logger.debug(f"Error details: {error.to_dict()}")
        console.print(error.to_user_message(), style="red", markup=False)
    elif isinstance(error, ConfigValidationError):
        console.print(str(error), style="red", markup=False)
    else:
        logger.exception("Unexpected error")
        console.print(f"Unexpected error: {error}", style="red", markup=False)
    sys.exit(1)


class RichProgressCallback:
    """Progress callback that displays stage updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self.progress.update(self.task_id, total=total)

    def __call__(self, stage: str, status: ExecutionStatus, message: Optional[str] = None):
        if status == ExecutionStatus.IN_PROGRESS:
            detail = f" ({message})" if message else ""
            self.progress.update(self.task_id, description=f"[cyan]Applying:[/cyan] {stage}{detail}")
            return

        self.completed += 1
        if status == ExecutionStatus.SUCCESS:
            marker = "[green]✓[/green]"
        elif status == ExecutionStatus.SKIPPED:
            marker = "[dim]-[/dim]"
        else:
            marker = "[red]✗[/red]"
        self.progress.update(
            self.task_id,
            completed=self.completed,
            description=f"{marker} {stage}" + (f": {message}" if message else ""),
        )
        self.progress.console.print(f"{marker} {stage}" + (f" [dim]{message}[/dim]" if message else ""))


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    )


def render_plan(plan: DeploymentPlan) -> None:
    table = Table(title="Deployment Plan", show_header=True, header_style="bold cyan")
    table.add_column("Wave", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Stack")
    table.add_column("Change")
    table.add_column("Reason", style="dim")

    wave_of = {stage: wave.wave_number for wave in plan.waves for stage in wave.stages}
    for change in plan.all_changes.values():
        style = CHANGE_STYLES[change.change_type]
        table.add_row(
            str(wave_of.get(change.stage, "-")),
            change.stage,
            change.stack_name,
            f"[{style}]{change.change_type.value}[/{style}]",
            change.reason,
        )
    console.print(table)

    summary = plan.get_summary()
    console.print(
        f"\n[bold]Plan:[/bold] {summary['create']} to create, {summary['update']} to update, "
        f"{summary['no_change']} unchanged"
    )


def render_deployment_result(result: DeploymentResult, rollback: Optional[RollbackResult]) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Change")
    table.add_column("Duration", justify="right")

    for stage_result in result.stage_results():
        status = "[green]applied[/green]" if stage_result.is_success() else "[red]failed[/red]"
        change = stage_result.change_type.value if stage_result.change_type else "-"
        table.add_row(stage_result.stage, status, change, f"{stage_result.duration:.1f}s")
    for stage in result.skipped_stages:
        table.add_row(stage, "[dim]skipped[/dim]", "-", "-")

    if result.is_success():
        console.print(Panel.fit(
            f"[green]✓ Deployment successful[/green]\n\n"
            f"Stages applied: {result.successful_stages}\n"
            f"Duration: {result.duration:.2f}s",
            title="Deployment Complete",
            border_style="green"
        ))
    else:
        console.print(Panel.fit(
            f"[red]✗ Deployment failed[/red]\n\n"
            f"Stages applied: {result.successful_stages}\n"
            f"Failed: {result.failed_stages}\n"
            f"Skipped: {len(result.skipped_stages)}\n"
            f"Duration: {result.duration:.2f}s",
            title="Deployment Failed",
            border_style="red"
        ))
    if result.stage_results():
        console.print(table)

    if result.error:
        console.print()
        console.print(result.error.to_user_message(), style="red", markup=False)

    if rollback:
        console.print(f"\n[bold]Rollback status:[/bold] {rollback.status.value}")
        if rollback.destroyed_stages:
            console.print(f"  Deleted: {', '.join(rollback.destroyed_stages)}")
        if rollback.restored_stages:
            console.print(f"  Restored: {', '.join(rollback.restored_stages)}")
        for stage, error in rollback.failed_operations.items():
            console.print(f"  [red]✗[/red] {stage}: {error}")


@cli.command()
@click.option('--name', prompt='Project name', help='Project name')
@click.option('--region', prompt='AWS region', default='us-east-1', help='Default AWS region')
@click.option('--account', prompt='AWS account ID', default='123456789012', help='Account of the dev environment')
@click.option('--force', is_flag=True, help='Overwrite existing files')
def init(name, region, account, force):
    """Scaffold cfn-deploy.yaml with network, container, service and pipeline stages."""
    config_path = Path.cwd() / DEFAULT_CONFIG_FILE

    if config_path.exists() and not force:
        console.print(f"[yellow]Configuration file already exists:[/yellow] {config_path}")
        console.print("Use [cyan]--force[/cyan] to overwrite")
        sys.exit(1)

    config_path.write_text(render_config(name, region, account))
    console.print(f"[green]✓ Created configuration file:[/green] {config_path}")

    templates_dir = Path.cwd() / "templates"
    templates_dir.mkdir(exist_ok=True)
    for filename, body in TEMPLATES.items():
        template_path = templates_dir / filename
        if template_path.exists() and not force:
            console.print(f"[yellow]Keeping existing template:[/yellow] {template_path}")
            continue
        template_path.write_text(body)
        console.print(f"[green]✓ Created template:[/green] {template_path}")

    gitignore_path = Path.cwd() / ".gitignore"
    if gitignore_path.exists():
        content = gitignore_path.read_text()
        if '.cfn-deploy/' not in content:
            with open(gitignore_path, 'a') as f:
                f.write(GITIGNORE_ENTRY)
            console.print("[green]✓ Updated .gitignore[/green]")
    else:
        gitignore_path.write_text(GITIGNORE_ENTRY)
        console.print("[green]✓ Created .gitignore[/green]")

    console.print("\n[bold]Next steps:[/bold]")
    console.print(f"  1. Review and customize [cyan]{DEFAULT_CONFIG_FILE}[/cyan] and [cyan]templates/[/cyan]")
    console.print("  2. Check the configuration: [cyan]cfn-deploy validate[/cyan]")
    console.print("  3. Deploy to dev: [cyan]cfn-deploy deploy --env dev[/cyan]")


@cli.command()
@click.option('--env', help='Apply this environment\'s parameter overrides')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--strict', is_flag=True, help='Treat warnings as errors')
@click.pass_context
def validate(ctx, env, config, strict):
    """Check configuration, templates, stage dependencies and consistency."""
    cfg = load_config(config)

    try:
        orchestrator = create_orchestrator(cfg, env)
        report = orchestrator.validate()
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    for error in report.errors:
        console.print(f"[red]✗[/red] {error}")

    if report.errors or (strict and report.warnings):
        console.print(f"\n[red]Validation failed:[/red] {len(report.errors)} error(s), "
                      f"{len(report.warnings)} warning(s)")
        sys.exit(1)

    order = orchestrator.resolve().deployment_order
    console.print(f"[green]✓ Configuration is valid[/green] ({len(order)} stages: {' -> '.join(order)})")


@cli.command()
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--env', help='Apply this environment\'s parameter overrides')
def order(config, env):
    """Print deployment waves and teardown order."""
    cfg = load_config(config)

    try:
        stage_graph = create_orchestrator(cfg, env).resolve()
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    table = Table(title="Deployment Order", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Stack")
    table.add_column("Wave", justify="right")
    table.add_column("Depends on", style="dim")

    wave_of = {stage: number for number, wave in enumerate(stage_graph.waves, 1) for stage in wave}
    for position, name in enumerate(stage_graph.deployment_order, 1):
        stage = stage_graph.stages[name]
        table.add_row(
            str(position), name, stage.stack_name, str(wave_of[name]), ", ".join(stage.dependencies) or "-"
        )
    console.print(table)
    console.print(f"\n[bold]Teardown:[/bold] {' -> '.join(stage_graph.teardown_order)}")


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--stage', help='Plan one stage and the stages it needs')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.pass_context
def plan(ctx, env, stage, config):
    """Show what a deploy would create or update."""
    cfg = load_config(config)

    try:
        deployment_plan = create_orchestrator(cfg, env).plan_deployment(stage_filter=stage)
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    render_plan(deployment_plan)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--stage', help='Deploy one stage and the stages it needs')
@click.option('--parallel/--sequential', default=False, help='Apply independent stages of a wave concurrently')
@click.option('--auto-rollback/--no-auto-rollback', default=False, help='Roll back the run on failure')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.pass_context
def deploy(ctx, env, stage, parallel, auto_rollback, yes, config):
    """Create or update stacks in dependency order."""
    cfg = load_config(config)

    try:
        orchestrator = create_orchestrator(
            cfg,
            env,
            profile=ctx.obj.get('profile'),
            region=ctx.obj.get('region'),
            with_aws=True,
        )
        deployment_plan = orchestrator.plan_deployment(stage_filter=stage)
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    console.print(Panel.fit(
        f"[bold]Deploying to {env}[/bold]\n"
        f"Project: {cfg.project.name}\n"
        f"Stage: {stage or 'all'}\n"
        f"Mode: {'parallel' if parallel else 'sequential'}\n"
        f"Auto-rollback: {'enabled' if auto_rollback else 'disabled'}",
        title="Deployment Configuration",
        border_style="cyan"
    ))
    render_plan(deployment_plan)

    if not deployment_plan.has_changes():
        console.print("\n[green]Nothing to deploy, every stage is up to date[/green]")
        return

    if not yes and not click.confirm("\nApply these changes?", default=False):
        console.print("[yellow]Deployment cancelled[/yellow]")
        return

    rollback_strategy = RollbackStrategy.AUTOMATIC if auto_rollback else RollbackStrategy.NONE

    try:
        with _progress() as progress:
            task_id = progress.add_task("[cyan]Starting deployment...", total=None)
            callback = RichProgressCallback(progress, task_id, deployment_plan.get_total_stages())
            result, rollback_result = orchestrator.deploy(
                stage_filter=stage,
                parallel=parallel,
                rollback_strategy=rollback_strategy,
                progress_callback=callback,
            )
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    console.print()
    render_deployment_result(result, rollback_result)
    if result.is_failed():
        sys.exit(1)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--stage', help='Destroy one stage')
@click.option('--cascade', is_flag=True, help='Also destroy the stages that depend on --stage')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.pass_context
def destroy(ctx, env, stage, cascade, yes, config):
    """Delete stacks in reverse deployment order."""
    cfg = load_config(config)

    state_manager = get_state_manager(cfg, env)
    if not state_manager.exists():
        console.print(f"[yellow]No deployment found for environment:[/yellow] {env}")
        return

    try:
        orchestrator = create_orchestrator(
            cfg,
            env,
            profile=ctx.obj.get('profile'),
            region=ctx.obj.get('region'),
            with_aws=True,
        )
        destruction_plan = orchestrator.plan_destruction(stage_filter=stage, cascade=cascade)
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    if destruction_plan.is_empty():
        console.print(f"[yellow]Nothing to destroy in environment:[/yellow] {env}")
        return

    console.print(Panel.fit(
        f"[bold red]⚠ WARNING: This will delete stacks[/bold red]\n\n"
        f"Environment: {env}\n"
        f"Project: {cfg.project.name}\n"
        f"Order: {' -> '.join(destruction_plan.stages)}",
        title="Destruction Plan",
        border_style="red"
    ))

    if not yes and not click.confirm("Are you sure you want to delete these stacks?", default=False):
        console.print("[yellow]Destruction cancelled[/yellow]")
        return

    try:
        with _progress() as progress:
            task_id = progress.add_task("[cyan]Starting destruction...", total=None)
            callback = RichProgressCallback(progress, task_id, destruction_plan.get_total_stages())
            result = orchestrator.destroy(stage_filter=stage, cascade=cascade, progress_callback=callback)
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    console.print()
    if result.is_success():
        console.print(Panel.fit(
            f"[green]✓ Destruction successful[/green]\n\n"
            f"Stages deleted: {result.successful_stages}\n"
            f"Duration: {result.duration:.2f}s",
            title="Destruction Complete",
            border_style="green"
        ))
        return

    console.print(Panel.fit(
        f"[red]✗ Destruction failed[/red]\n\n"
        f"Stages deleted: {result.successful_stages}\n"
        f"Failed: {result.failed_stages}\n"
        f"Not attempted: {', '.join(result.skipped_stages) or 'none'}\n"
        f"Duration: {result.duration:.2f}s",
        title="Destruction Failed",
        border_style="red"
    ))
    if result.error:
        console.print(result.error.to_user_message(), style="red", markup=False)
    sys.exit(1)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
def status(env, config):
    """Show the deployment record of every stage."""
    cfg = load_config(config)

    state_manager = get_state_manager(cfg, env)
    if not state_manager.exists():
        console.print(f"[yellow]No deployment found for environment:[/yellow] {env}")
        return

    try:
        state = state_manager.load()
    except DeploymentError as e:
        fail(e)

    table = Table(title=f"Stages in {env}", show_header=True, header_style="bold cyan")
    table.add_column("Stage", style="cyan")
    table.add_column("Stack")
    table.add_column("Status")
    table.add_column("Updated")
    table.add_column("Template", style="dim")
    table.add_column("Error", style="red")

    configured = [stage.name for stage in cfg.stages]
    names = [name for name in configured if name in state.records]
    names += [name for name in state.records if name not in names]

    for name in names:
        record = state.records[name]
        style = STATUS_STYLES.get(record.status.value, "white")
        table.add_row(
            name,
            record.stack_name,
            f"[{style}]{record.status.value}[/{style}]",
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            (record.template_hash or "")[:12],
            record.error or "",
        )

    for name in configured:
        if name not in state.records:
            table.add_row(name, cfg.get_stage(name).resolved_stack_name, "[dim]not deployed[/dim]", "-", "", "")

    console.print(table)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--stage', help='Show outputs of one stage')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
def outputs(env, stage, output_format, config):
    """Show recorded stack outputs."""
    cfg = load_config(config)

    if not get_state_manager(cfg, env).exists():
        console.print(f"[yellow]No deployment found for environment:[/yellow] {env}")
        return

    try:
        stage_outputs = create_orchestrator(cfg, env).get_outputs(stage_filter=stage)
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    if output_format == 'json':
        click.echo(json.dumps(stage_outputs, indent=2))
        return

    if not any(stage_outputs.values()):
        console.print("[dim]No outputs found[/dim]")
        return

    table = Table(title=f"Stack Outputs - Environment: {env}", show_header=True, header_style="bold")
    table.add_column("Stage", style="cyan")
    table.add_column("Output", style="magenta")
    table.add_column("Value", style="white")
    for name, values in stage_outputs.items():
        for key, value in sorted(values.items()):
            table.add_row(name, key, value)
    console.print(table)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--remote/--local-only', default=True, help='Also ask CloudFormation about the live stacks')
@click.option('--config', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.pass_context
def drift(ctx, env, remote, config):
    """Compare configuration, recorded state and live stacks."""
    cfg = load_config(config)

    try:
        orchestrator = create_orchestrator(
            cfg,
            env,
            profile=ctx.obj.get('profile'),
            region=ctx.obj.get('region'),
            with_aws=remote,
        )
        report = orchestrator.detect_drift(remote=remote)
    except (DeploymentError, ConfigValidationError) as e:
        fail(e)

    if not report.has_drift():
        scope = "configuration, records and stacks" if report.checked_remote else "configuration and records"
        console.print(f"[green]✓ No drift between {scope}[/green]")
        return

    table = Table(title=f"Drift in {env}", show_header=True, header_style="bold yellow")
    table.add_column("Stage", style="cyan")
    table.add_column("Kind")
    table.add_column("Source")
    table.add_column("Detail")
    for item in report.items:
        table.add_row(item.stage, item.drift_type.value, "stack" if item.remote else "local", item.detail)
    console.print(table)


@cli.command('check-app')
@click.argument('path', required=False, type=click.Path(file_okay=False))
@click.option('--config', default=None, help='Configuration file listing the companion files')
def check_app(path, config):
    """Check the application repository's container build, build spec and deployment mapping files."""
    application = None
    if config or Path(DEFAULT_CONFIG_FILE).exists():
        cfg = load_config(config or DEFAULT_CONFIG_FILE)
        application = cfg.application
        if path is None:
            path = str(cfg.resolve_path(cfg.application.path))

    report = CompanionFileChecker(application).check(path)

    table = Table(title=f"Companion files in {report.root}", show_header=True, header_style="bold cyan")
    table.add_column("File", style="cyan")
    table.add_column("Kind")
    table.add_column("Result")
    for check in report.checks:
        result = "[green]✓ ok[/green]" if check.passed else f"[red]✗ {'; '.join(check.errors)}[/red]"
        table.add_row(str(check.path), check.label, result)
    console.print(table)

    if not report.passed:
        sys.exit(1)


if __name__ == '__main__':
    cli()
