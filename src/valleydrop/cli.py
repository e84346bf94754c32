"""
valleydrop/cli.py

Operator command line.

    valleydrop create OWNER TOTAL_ADA --holders-file holders.json [--run]
    valleydrop create OWNER TOTAL_ADA --policy-id <policy> [--run]
    valleydrop run SESSION_ID
    valleydrop resume
    valleydrop analyze [SESSION_ID]
    valleydrop status SESSION_ID
    valleydrop cancel SESSION_ID [--reason TEXT]

Settings come from the environment (see valleydrop.config).
"""

import json
import logging
import sys
from typing import Optional

import click
import trio

from .cardano import CardanoCli, cli_for_session
from .chain import BlockfrostClient
from .config import LOVELACE_PER_ADA, AirdropConfig
from .engine import AirdropEngine
from .errors import AirdropError
from .notify import LoggingNotificationSink, deposit_instructions
from .recipients import load_manifest
from .recovery import RecoveryAnalyzer
from .session import AirdropSession
from .store import SessionStore

logger = logging.getLogger("valleydrop.cli")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )


def build_engine(config: AirdropConfig, need_chain: bool = True) -> AirdropEngine:
    balance_query = None
    if need_chain:
        balance_query = BlockfrostClient(config.require_blockfrost_key(), config.blockfrost_url)

    def tool_for(session: AirdropSession) -> CardanoCli:
        return cli_for_session(
            session.funding_address,
            session.wallet_dir or config.wallets_dir,
            network=config.network,
            socket_path=config.node_socket_path,
        )

    wallet_cli = CardanoCli(network=config.network, socket_path=config.node_socket_path)
    return AirdropEngine(
        config,
        balance_query=balance_query,
        settlement_tool_factory=tool_for,
        notifier=LoggingNotificationSink(),
        wallet_factory=wallet_cli.generate_wallet,
    )


def _engine(config: AirdropConfig, need_chain: bool = True) -> AirdropEngine:
    try:
        return build_engine(config, need_chain)
    except AirdropError as e:
        raise click.ClickException(str(e))


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option('--base-dir', default=None, help='Root directory for sessions and wallets')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def main(ctx: click.Context, base_dir: Optional[str], verbose: bool):
    """Airdrop settlement workflow."""
    setup_logging(verbose)
    config = AirdropConfig.from_env()
    if base_dir:
        config.base_dir = base_dir
    ctx.obj = config


@main.command()
@click.argument('owner_id')
@click.argument('total_ada', type=click.IntRange(min=1))
@click.option('--holders-file', default=None, help='JSON manifest path or URL')
@click.option('--policy-id', default=None, help='Fetch holders of this policy from chain')
@click.option('--drain-address', default='', help='Where leftovers go (default: treasury)')
@click.option('--run/--no-run', 'run_after', default=False, help='Watch and settle after creating')
@click.pass_obj
def create(config, owner_id, total_ada, holders_file, policy_id, drain_address, run_after):
    """Create a session and print deposit instructions."""
    if not holders_file and not policy_id:
        raise click.UsageError('Provide either --holders-file or --policy-id')

    engine = _engine(config)

    async def _create():
        if holders_file:
            entries = await trio.to_thread.run_sync(load_manifest, holders_file)
        else:
            entries = await engine.balance_query.policy_holders(policy_id)
        if not entries:
            raise AirdropError('No holders found.')
        session, recipient_set = await engine.open_session(
            owner_id, entries, total_ada * LOVELACE_PER_ADA,
            policy_id=policy_id or '', drain_address=drain_address,
        )
        click.echo(deposit_instructions(session, recipient_set.invalid_dropped, recipient_set.dust_dropped))
        click.echo(f"Session: {session.session_id}")
        if run_after:
            await engine.run(session.session_id)

    _run_or_exit(_create)


@main.command()
@click.argument('session_id')
@click.pass_obj
def run(config, session_id):
    """Run one session from its persisted stage."""
    engine = _engine(config)

    async def _run():
        session = await engine.run(session_id)
        click.echo(f"Session {session_id}: {session.stage}")

    _run_or_exit(_run)


@main.command()
@click.pass_obj
def resume(config):
    """Restart every session that is safe to resume."""
    engine = _engine(config)

    async def _resume():
        async with trio.open_nursery() as nursery:
            results = engine.resume_all(nursery)
            for analysis in results:
                click.echo(
                    f"{analysis.session_id}: {analysis.action.value} "
                    f"(risk {analysis.risk_level.value})"
                )

    _run_or_exit(_resume)


@main.command()
@click.argument('session_id', required=False)
@click.pass_obj
def analyze(config, session_id):
    """Crash-recovery classification of one or all sessions."""
    analyzer = RecoveryAnalyzer(SessionStore(config.sessions_dir))
    if session_id:
        _echo_json(analyzer.analyze(session_id).to_dict())
    else:
        _echo_json([a.to_dict() for a in analyzer.analyze_all()])


@main.command()
@click.argument('session_id')
@click.pass_obj
def status(config, session_id):
    """Show a persisted session."""
    engine = _engine(config, need_chain=False)
    try:
        _echo_json(engine.status(session_id))
    except AirdropError as e:
        raise click.ClickException(str(e))


@main.command()
@click.argument('session_id')
@click.option('--reason', default='', help='Recorded with the cancellation')
@click.pass_obj
def cancel(config, session_id, reason):
    """Cancel a session that is not mid-settlement."""
    engine = _engine(config, need_chain=False)
    try:
        session = engine.cancel(session_id, reason)
    except AirdropError as e:
        raise click.ClickException(str(e))
    click.echo(f"Session {session.session_id}: {session.stage}")


def _run_or_exit(fn) -> None:
    try:
        trio.run(fn)
    except AirdropError as e:
        raise click.ClickException(str(e))


if __name__ == '__main__':
    sys.exit(main())
