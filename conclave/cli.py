"""
Conclave CLI - run swarm agents from the command line.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .agent import Agent
from .config import AgentConfig, ConfigError, TransportConfig
from .llm.backends import BackendKind, OllamaBackend
from .memory import ConversationEntry
from .mesh.codec import CodecError, DecodeError, decode, encode
from .mesh.message import MessageEnvelope, MessageKind
from .mesh.transport import MulticastTransport, TransportError
from .network.ip_detect import get_route_ip
from .scheduler import DEBATE_ROLES, FailurePolicy

console = Console()

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

DEFAULT_ADDRESS = "239.255.255.250:8080"


def setup_logging(level: str = "info"):
    """Set up logging configuration."""
    logging.basicConfig(
        level=LOG_LEVELS.get(level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()]
    )


def fail(message: str):
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


@click.group()
@click.option('--log-level', default='info', type=click.Choice(list(LOG_LEVELS)), help='Set the log level')
@click.option('-v', '--verbose', is_flag=True, help='Shortcut for --log-level debug')
@click.version_option(package_name="conclave")
@click.pass_context
def main(ctx, log_level, verbose):
    """Conclave - autonomous AI agents talking over UDP multicast."""
    ctx.ensure_object(dict)
    setup_logging("debug" if verbose else log_level)


def _build_config(
    config_path: Optional[str],
    agent_id: Optional[str],
    multicast_address: Optional[str],
    interface: Optional[str],
    llm_backend: Optional[str],
    model: Optional[str],
    api_key: Optional[str],
    endpoint: Optional[str],
    timeout: Optional[float],
    max_retries: Optional[int],
    personality: Optional[str],
    personality_file: Optional[str],
    processing_delay: Optional[int],
    quiet: Optional[float],
    cooldown: Optional[float],
    speak_probability: Optional[float],
    role: Optional[str],
    debate_order: Optional[str],
    max_rounds: Optional[int],
    on_failure: Optional[str],
    greeting: Optional[str],
    voice: bool,
) -> AgentConfig:
    """Merge a config file (if any) with command-line overrides."""
    if personality and personality_file:
        raise ConfigError("--personality cannot be used with --personality-file")

    config = AgentConfig.load(Path(config_path)) if config_path else AgentConfig()

    if agent_id is not None:
        config.agent_id = agent_id
    if multicast_address is not None:
        config.transport = TransportConfig.parse_address(multicast_address, config.transport.interface)
    if interface is not None:
        config.transport.interface = interface

    if llm_backend is not None:
        config.backend.type = llm_backend
    if model is not None:
        config.backend.model = model
    if api_key is not None:
        config.backend.api_key = api_key
    if endpoint is not None:
        config.backend.endpoint = endpoint
    if timeout is not None:
        config.backend.timeout = timeout
    if max_retries is not None:
        config.backend.max_retries = max_retries

    if personality is not None:
        config.personality = personality
        config.personality_file = None
    if personality_file is not None:
        config.personality_file = personality_file
    if processing_delay is not None:
        config.processing_delay_ms = processing_delay

    if quiet is not None:
        config.scheduler.quiet_period = quiet
    if cooldown is not None:
        config.scheduler.cooldown = cooldown
    if speak_probability is not None:
        config.scheduler.speak_probability = speak_probability
    if role is not None:
        config.scheduler.role = role
    if debate_order is not None:
        config.scheduler.turn_order = [r.strip() for r in debate_order.split(",") if r.strip()]
    if max_rounds is not None:
        config.scheduler.max_rounds = max_rounds
    if on_failure is not None:
        config.scheduler.on_failure = on_failure

    if greeting is not None:
        config.greeting = greeting or None
    if voice:
        config.voice = True

    config.validate()
    return config


def _print_entry(agent_id: str):
    def listener(entry: ConversationEntry):
        speaker = agent_id if entry.is_self else entry.role
        style = "green" if entry.is_self else "cyan"
        console.print(f"[bold {style}]{speaker}[/bold {style}]: {entry.content}")
    return listener


async def _run_agent(config: AgentConfig):
    agent = Agent.from_config(config)
    agent.on_entry(_print_entry(config.agent_id))

    backend = agent.gateway.backend
    if isinstance(backend, OllamaBackend) and not await backend.health_check():
        console.print(f"[yellow]⚠ Ollama not reachable at {backend.base_url}[/yellow]")

    try:
        await agent.run()
    finally:
        await agent.stop()


@main.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, dir_okay=False), help='JSON config file')
@click.option('--agent-id', '-i', help="Unique identifier for this agent (e.g., 'agent-1', 'researcher')")
@click.option('--multicast-address', '-a', help=f'UDP multicast ADDRESS:PORT [default: {DEFAULT_ADDRESS}]')
@click.option('--interface', help="Network interface to bind to (e.g., 'eth0', '192.168.1.100')")
@click.option('--llm-backend', '-b', type=click.Choice([k.value for k in BackendKind]), help='LLM backend [default: openai]')
@click.option('--model', '-m', help="Model to use (e.g., 'gpt-4', 'claude-3-sonnet', 'llama2') [default: gpt-3.5-turbo]")
@click.option('--api-key', '-k', help='API key (or set OPENAI_API_KEY/ANTHROPIC_API_KEY/GEMINI_API_KEY/OPENROUTER_API_KEY)')
@click.option('--endpoint', help='Custom API endpoint URL for the LLM backend')
@click.option('--timeout', type=float, help='Request timeout in seconds [default: 30]')
@click.option('--max-retries', type=int, help='Maximum retry attempts for failed LLM requests [default: 3]')
@click.option('--personality', '-p', help='Agent personality used as the system prompt')
@click.option('--personality-file', type=click.Path(), help='Read the personality from a file')
@click.option('--processing-delay', type=int, help='Simulated processing delay in milliseconds [default: 5000]')
@click.option('--quiet', type=float, help='Seconds of silence before speaking [default: 2]')
@click.option('--cooldown', type=float, help='Minimum seconds between own messages [default: 5]')
@click.option('--speak-probability', type=float, help='Chance of speaking when the floor is free [default: 1.0]')
@click.option('--role', help=f"Debate role (e.g. {', '.join(DEBATE_ROLES)})")
@click.option('--debate-order', help='Comma-separated speaking order, enables debate mode')
@click.option('--max-rounds', type=int, help='Stop the debate after this many rounds')
@click.option('--on-failure', type=click.Choice([p.value for p in FailurePolicy]), help='Skip the turn or send a notice when the LLM fails')
@click.option('--greeting', help='Message broadcast on startup ("" to disable) [default: Hi]')
@click.option('--voice', is_flag=True, help='Speak replies aloud')
def run(config_path, agent_id, multicast_address, interface, llm_backend, model, api_key,
        endpoint, timeout, max_retries, personality, personality_file, processing_delay,
        quiet, cooldown, speak_probability, role, debate_order, max_rounds, on_failure,
        greeting, voice):
    """Run an agent in the swarm."""
    try:
        config = _build_config(
            config_path, agent_id, multicast_address, interface, llm_backend, model,
            api_key, endpoint, timeout, max_retries, personality, personality_file,
            processing_delay, quiet, cooldown, speak_probability, role, debate_order,
            max_rounds, on_failure, greeting, voice,
        )
    except ConfigError as e:
        fail(str(e))

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Agent", f"[cyan]{config.agent_id}[/cyan]")
    table.add_row("Backend", f"{config.backend.type} ({config.backend.model})")
    table.add_row("Multicast", config.transport.address)
    table.add_row("Local address", config.transport.interface or get_route_ip())
    if config.scheduler.turn_order:
        table.add_row("Debate", f"{config.scheduler.role} in {' → '.join(config.scheduler.turn_order)}")

    console.print(f"\n[bold blue]Starting agent '{config.agent_id}'[/bold blue]")
    console.print(table)
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        asyncio.run(_run_agent(config))
    except TransportError as e:
        fail(str(e))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


@main.command()
@click.option('--multicast-address', '-a', default=DEFAULT_ADDRESS, show_default=True, help='UDP multicast ADDRESS:PORT')
@click.option('--interface', help='Network interface to listen on')
@click.option('--json', 'as_json', is_flag=True, help='Print envelopes as JSON lines')
@click.option('--heartbeats', is_flag=True, help='Include heartbeat messages')
def listen(multicast_address, interface, as_json, heartbeats):
    """Print swarm traffic without taking part."""
    try:
        transport_config = TransportConfig.parse_address(multicast_address, interface)
    except ConfigError as e:
        fail(str(e))

    transport = MulticastTransport(
        transport_config.group, transport_config.port, transport_config.interface
    )

    def show(data: bytes, addr):
        try:
            envelope = decode(data)
        except DecodeError as e:
            if not as_json:
                console.print(f"[dim]malformed datagram from {addr[0]}: {e}[/dim]")
            return
        if envelope.kind == MessageKind.HEARTBEAT and not heartbeats:
            return
        if as_json:
            click.echo(json.dumps(envelope.to_dict()))
            return
        turn = f" [magenta]#{envelope.turn_sequence}[/magenta]" if envelope.turn_sequence is not None else ""
        console.print(f"[bold cyan]{envelope.sender_id}[/bold cyan]{turn}: {envelope.content}")

    async def listen_forever():
        transport.join()
        try:
            await transport.receive_loop(show)
        finally:
            transport.close()

    try:
        asyncio.run(listen_forever())
    except TransportError as e:
        fail(str(e))
    except KeyboardInterrupt:
        pass


@main.command()
@click.argument('message')
@click.option('--sender', '-s', default='moderator', show_default=True, help='Sender id to use')
@click.option('--multicast-address', '-a', default=DEFAULT_ADDRESS, show_default=True, help='UDP multicast ADDRESS:PORT')
@click.option('--interface', help='Network interface to send from')
@click.option('--turn', type=int, help='Send as a debate turn with this sequence number')
def say(message, sender, multicast_address, interface, turn):
    """Broadcast a single MESSAGE to the swarm."""
    try:
        transport_config = TransportConfig.parse_address(multicast_address, interface)
    except ConfigError as e:
        fail(str(e))

    if turn is not None:
        envelope = MessageEnvelope.debate_turn(sender, message, turn)
    else:
        envelope = MessageEnvelope.chat(sender, message)

    try:
        data = encode(envelope)
    except CodecError as e:
        fail(str(e))

    transport = MulticastTransport(
        transport_config.group, transport_config.port, transport_config.interface
    )

    async def send_once():
        transport.join()
        try:
            await transport.send(data)
        finally:
            transport.close()

    try:
        asyncio.run(send_once())
    except TransportError as e:
        fail(str(e))

    console.print(f"[green]✓ Sent {envelope.id_hex[:8]} as {sender}[/green]")


@main.command()
@click.argument('path', type=click.Path(dir_okay=False))
@click.option('--agent-id', '-i', required=True, help='Unique identifier for this agent')
@click.option('--llm-backend', '-b', default='openai', type=click.Choice([k.value for k in BackendKind]), show_default=True)
@click.option('--model', '-m', help='Model to use')
@click.option('--force', is_flag=True, help='Overwrite an existing file')
def init(path, agent_id, llm_backend, model, force):
    """Write a starter config file to PATH."""
    target = Path(path)
    if target.exists() and not force:
        fail(f"{target} already exists (use --force to overwrite)")

    config = AgentConfig(agent_id=agent_id)
    config.backend.type = llm_backend
    if model:
        config.backend.model = model
    try:
        config.validate()
    except ConfigError as e:
        fail(str(e))

    config.save(target)
    console.print(f"[green]✓ Wrote {target}[/green]")
    console.print(f"[dim]Start it with: conclave run --config {target}[/dim]")


if __name__ == "__main__":
    main()
