"""
CLI interface for dorchestra.

Provides commands to derive identities, inspect persisted unit state, run
pipelines, drain task message files through the queue bridge, and list
dead letters.

Unit classes are supplied with --units module:attr, where attr is an
ExecutionUnit subclass, a list/tuple of them, or a UnitTypeRegistry. The
PipelineOrchestrator is always registered.
"""

import importlib
import json
import sys
from pathlib import Path

import click

from dorchestra import __version__


@click.group()
@click.version_option(version=__version__, prog_name="dorchestra")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.pass_context
def main(ctx, config_path):
    """
    dorchestra - Durable unit orchestrator.

    Route calls to stateful execution units, run pipelines, and bridge
    task queues.
    """
    from dorchestra.config import load_config
    from dorchestra.utils import setup_logging_from_config

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except Exception as e:
        # init works without a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging_from_config(config)


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'dorchestra init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _load_unit_types(specs: tuple[str, ...]):
    """Build a UnitTypeRegistry from --units module:attr values."""
    from dorchestra.pipeline import PipelineOrchestrator
    from dorchestra.units import ExecutionUnit, UnitTypeRegistry

    unit_types = UnitTypeRegistry.of(PipelineOrchestrator)
    for spec in specs:
        module_name, _, attr = spec.partition(":")
        if not module_name or not attr:
            raise click.BadParameter(f"Expected module:attr, got {spec!r}", param_hint="--units")
        try:
            target = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as e:
            raise click.BadParameter(f"Cannot load {spec}: {e}", param_hint="--units")

        if isinstance(target, UnitTypeRegistry):
            for namespace in target.list_namespaces():
                unit_types.register(target.get(namespace), namespace)
        elif isinstance(target, type) and issubclass(target, ExecutionUnit):
            unit_types.register(target)
        elif isinstance(target, (list, tuple)):
            for unit_cls in target:
                unit_types.register(unit_cls)
        else:
            raise click.BadParameter(f"{spec} is not a unit class, list, or UnitTypeRegistry", param_hint="--units")
    return unit_types


def _build_gateway(config, units: tuple[str, ...]):
    from dorchestra.config import build_event_sink, build_store
    from dorchestra.gateway import UnitGateway
    from dorchestra.registry import UnitRegistry

    return UnitGateway(
        store=build_store(config),
        unit_types=_load_unit_types(units),
        registry=UnitRegistry(config.default_namespace),
        call_timeout=config.call_timeout_seconds,
        event_sink=build_event_sink(config),
    )


def _parse_identity(text: str, default_namespace: str):
    """Accept "namespace:digest" or "namespace/logical name"."""
    from dorchestra.errors import InvalidNameError
    from dorchestra.registry import UnitIdentity, derive_identity

    try:
        return UnitIdentity.parse(text)
    except InvalidNameError:
        pass
    if "/" in text:
        namespace, name = text.split("/", 1)
        return derive_identity(namespace, name)
    return derive_identity(default_namespace, text)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize dorchestra configuration."""
    from dorchestra.config import DorchestraConfig, get_dorchestra_home
    import yaml

    home = get_dorchestra_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = DorchestraConfig().to_dict()
    default_cfg["logging"] = {"level": "INFO", "format": "pretty", "console": True}
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized dorchestra config at {cfg_path}")


@main.command("resolve")
@click.argument("name")
@click.option("--namespace", "-n", default=None, help="Unit namespace (default: bridge.default_namespace)")
@click.pass_context
def resolve(ctx, name: str, namespace: str | None):
    """Print the identity of a logical name."""
    from dorchestra.errors import InvalidNameError
    from dorchestra.registry import DEFAULT_NAMESPACE, derive_identity

    config = ctx.obj.get("config")
    namespace = namespace or (config.default_namespace if config else DEFAULT_NAMESPACE)
    try:
        identity = derive_identity(namespace, name)
    except InvalidNameError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(str(identity))


@main.command("state")
@click.argument("identity")
@click.pass_context
def show_state(ctx, identity: str):
    """Show the persisted state of a unit (IDENTITY is ns:digest or ns/name)."""
    from dorchestra.config import build_store
    from dorchestra.errors import InvalidNameError

    config = _require_config(ctx)
    try:
        unit_identity = _parse_identity(identity, config.default_namespace)
    except InvalidNameError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    store = build_store(config)
    try:
        stored = store.load(unit_identity)
    finally:
        store.close()
    if stored is None:
        click.echo(f"✗ No state stored for {unit_identity}", err=True)
        raise SystemExit(1)

    click.echo(json.dumps({"identity": str(unit_identity), **stored.to_dict()}, indent=2))


@main.group("pipeline")
def pipeline_group():
    """Run pipelines."""
    pass


@pipeline_group.command("run")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", required=True, help="Logical name of the pipeline run")
@click.option("--input", "input_json", default="{}", help="Pipeline input as a JSON object")
@click.option("--units", multiple=True, help="Unit classes to register (module:attr)")
@click.option("--timeout", type=float, default=None, help="Deadline for the whole pipeline in seconds")
@click.pass_context
def pipeline_run(ctx, spec_file: Path, name: str, input_json: str, units: tuple[str, ...], timeout: float | None):
    """Run the pipeline in SPEC_FILE under NAME."""
    from dorchestra.errors import DorchestraError
    from dorchestra.pipeline import load_pipeline_spec, run_pipeline

    config = _require_config(ctx)
    try:
        pipeline_input = json.loads(input_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--input")
    if not isinstance(pipeline_input, dict):
        raise click.BadParameter("Input must be a JSON object", param_hint="--input")

    try:
        spec = load_pipeline_spec(spec_file)
    except ValueError as e:
        click.echo(f"✗ Invalid pipeline spec: {e}", err=True)
        raise SystemExit(1)

    gateway = _build_gateway(config, units)
    try:
        result = run_pipeline(gateway, name, spec, pipeline_input, timeout=timeout)
    except DorchestraError as e:
        click.echo(f"✗ {type(e).__name__}: {e}", err=True)
        raise SystemExit(1)
    finally:
        gateway.shutdown()
        gateway.store.close()

    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        raise SystemExit(1)


@main.group("bridge")
def bridge_group():
    """Deliver task messages to units."""
    pass


@bridge_group.command("drain")
@click.argument("messages_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--units", multiple=True, help="Unit classes to register (module:attr)")
@click.option("--max-batches", type=int, default=None, help="Stop after this many batches")
@click.pass_context
def bridge_drain(ctx, messages_file: Path, units: tuple[str, ...], max_batches: int | None):
    """Deliver every message in MESSAGES_FILE (JSONL or JSON list)."""
    from dorchestra.bridge import QueueBridge
    from dorchestra.task_queue import InMemoryTaskQueue, JsonlDeadLetterSink, load_messages

    config = _require_config(ctx)
    try:
        messages = load_messages(messages_file)
    except ValueError as e:
        click.echo(f"✗ Cannot read messages: {e}", err=True)
        raise SystemExit(1)

    gateway = _build_gateway(config, units)
    queue = InMemoryTaskQueue(messages)
    dead_letters = JsonlDeadLetterSink(config.dead_letter_path)
    bridge = QueueBridge.from_config(config, gateway, queue, dead_letters)
    try:
        reports = bridge.drain(max_batches=max_batches)
    finally:
        gateway.shutdown()
        gateway.store.close()

    summary = {
        "messages": len(messages),
        "batches": len(reports),
        "acked": sum(r.acked for r in reports),
        "retried": sum(r.retried for r in reports),
        "dead_lettered": sum(r.dead_lettered for r in reports),
    }
    click.echo(json.dumps(summary, indent=2))


@main.group("dead-letters")
def dead_letters_group():
    """Inspect dead-lettered messages."""
    pass


@dead_letters_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON records")
@click.pass_context
def dead_letters_list(ctx, as_json: bool):
    """List dead-lettered messages."""
    from rich.table import Table

    from dorchestra.task_queue import JsonlDeadLetterSink
    from dorchestra.utils import console

    config = _require_config(ctx)
    records = JsonlDeadLetterSink(config.dead_letter_path).read_all()
    if as_json:
        click.echo(json.dumps(records, indent=2))
        return
    if not records:
        click.echo("No dead letters.")
        return

    table = Table(title=f"Dead letters ({config.dead_letter_path})")
    table.add_column("Message ID")
    table.add_column("Destination")
    table.add_column("Operation")
    table.add_column("Attempt", justify="right")
    table.add_column("Error")
    for record in records:
        message = record.get("message", {})
        error = record.get("last_error") or {}
        table.add_row(
            str(message.get("message_id", "")),
            str(message.get("destination", "")),
            str(message.get("operation", "")),
            str(message.get("delivery_attempt", 0)),
            f"{error.get('type', '')}: {error.get('message', '')}",
        )
    console.print(table)


if __name__ == "__main__":
    sys.exit(main())
