"""
pjflow CLI: Payjoin v2 negotiation tooling.

Commands:
    pjflow uri build        Build a BIP21 URI with a payjoin endpoint
    pjflow uri decode       Decode a payjoin URI
    pjflow psbt inspect     Summarize a base64 PSBT
    pjflow keys fetch       Fetch a directory's OHTTP keys through a relay
    pjflow session list     List stored sessions
    pjflow session show     Show a stored session
    pjflow session delete   Delete a stored session
"""

from __future__ import annotations

import json
import sys
import time
from typing import Optional

import click

from . import __version__
from .amount import format_btc
from . import psbt as psbt_util
from .config import PayjoinConfig
from .errors import PayjoinError
from .persist import SessionStore
from .relay import fetch_ohttp_keys
from .uri import PayjoinUri, PayjoinUriBuilder


def _config() -> PayjoinConfig:
    try:
        return PayjoinConfig.from_env()
    except PayjoinError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)


def _store() -> SessionStore:
    return SessionStore(_config().sessions_dir)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


_SECRET_FIELDS = {"secret_key"}


def _redact(value, secret_fields=_SECRET_FIELDS):
    """Copy of stored session state with private keys masked."""
    if isinstance(value, dict):
        return {
            k: "<redacted>" if k in secret_fields else _redact(v, secret_fields)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v, secret_fields) for v in value]
    return value


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
def main():
    """pjflow: Payjoin v2 negotiation tooling."""
    pass


# ── uri ───────────────────────────────────────────────────────────

@main.group("uri")
def uri_group():
    """Build and decode payjoin URIs."""
    pass


@uri_group.command("build")
@click.argument("address")
@click.argument("endpoint")
@click.option("--amount", type=int, default=None, help="Amount in satoshis")
@click.option("--label", default=None, help="BIP21 label")
@click.option("--message", default=None, help="BIP21 message")
@click.option("--disable-output-substitution", is_flag=True, default=False,
              help="Forbid the receiver from substituting its output (pjos=0)")
def uri_build(
    address: str,
    endpoint: str,
    amount: Optional[int],
    label: Optional[str],
    message: Optional[str],
    disable_output_substitution: bool,
):
    """Build a payjoin URI for ADDRESS with payjoin ENDPOINT."""
    try:
        builder = PayjoinUriBuilder(address, endpoint)
        if amount is not None:
            builder = builder.amount(amount)
        if label is not None:
            builder = builder.label(label)
        if message is not None:
            builder = builder.message(message)
        if disable_output_substitution:
            builder = builder.disable_output_substitution()
        click.echo(builder.build())
    except PayjoinError as e:
        click.echo(f"❌ Failed to build URI: {e}", err=True)
        sys.exit(1)


@uri_group.command("decode")
@click.argument("uri")
def uri_decode(uri: str):
    """Decode a payjoin URI into its parameters."""
    try:
        parsed = PayjoinUri.parse(uri)
        info = parsed.to_dict()
        if parsed.amount_sat is not None:
            info["amount_btc"] = format_btc(parsed.amount_sat)
        keys = parsed.ohttp_keys()
        if keys is not None:
            info["ohttp_key_id"] = keys.key_id
        info["expired"] = parsed.is_expired()
    except PayjoinError as e:
        click.echo(f"❌ Invalid URI: {e}", err=True)
        sys.exit(1)
    _echo_json(info)


# ── psbt ──────────────────────────────────────────────────────────

@main.group("psbt")
def psbt_group():
    """PSBT utilities."""
    pass


@psbt_group.command("inspect")
@click.argument("psbt")
def psbt_inspect(psbt: str):
    """Summarize a base64 PSBT: inputs, outputs, fee and fee rate."""
    try:
        summary = psbt_util.summary(psbt_util.from_base64(psbt))
    except PayjoinError as e:
        click.echo(f"❌ Invalid PSBT: {e}", err=True)
        sys.exit(1)
    _echo_json(summary)


# ── keys ──────────────────────────────────────────────────────────

@main.group("keys")
def keys_group():
    """OHTTP key configuration."""
    pass


@keys_group.command("fetch")
@click.option("--relay", default=None, help="OHTTP relay URL (default: $PJFLOW_OHTTP_RELAY)")
@click.option("--directory", default=None, help="Payjoin directory URL (default: $PJFLOW_DIRECTORY)")
def keys_fetch(relay: Optional[str], directory: Optional[str]):
    """Fetch the directory's OHTTP keys and print them as hex."""
    config = _config()
    relay = relay or config.ohttp_relay
    directory = directory or config.directory
    if not directory:
        click.echo("❌ No directory given: pass --directory or set PJFLOW_DIRECTORY", err=True)
        sys.exit(1)
    try:
        keys = fetch_ohttp_keys(directory, relay=relay, timeout=config.http_timeout)
    except PayjoinError as e:
        click.echo(f"❌ Failed to fetch OHTTP keys: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ OHTTP keys from {directory}")
    click.echo(f"   Key id:  {keys.key_id}")
    click.echo(f"   Config:  {keys.encode().hex()}")


# ── session ───────────────────────────────────────────────────────

@main.group("session")
def session_group():
    """Stored negotiation sessions."""
    pass


@session_group.command("list")
def session_list():
    """List stored sessions, most recent first."""
    sessions = _store().list()
    if not sessions:
        click.echo("No sessions stored.")
        return
    for s in sessions:
        saved = time.strftime("%Y-%m-%d %H:%M", time.localtime(s["saved_at"]))
        click.echo(f"{s['session_id']}  {s['type']:<20} {saved}")


@session_group.command("show")
@click.argument("session_id")
def session_show(session_id: str):
    """Show a stored session's state."""
    try:
        raw = _store().load_raw(session_id)
    except PayjoinError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if raw is None:
        click.echo(f"❌ Session not found: {session_id}", err=True)
        sys.exit(1)
    # a sender poll context keeps its reply secret key under "reply_key"
    secret_fields = _SECRET_FIELDS | {"reply_key"} if raw.get("type") == "V2GetContext" else _SECRET_FIELDS
    _echo_json(_redact(raw, secret_fields))


@session_group.command("delete")
@click.argument("session_id")
@click.confirmation_option(prompt="Delete this session?")
def session_delete(session_id: str):
    """Delete a stored session."""
    try:
        deleted = _store().delete(session_id)
    except PayjoinError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if not deleted:
        click.echo(f"❌ Session not found: {session_id}", err=True)
        sys.exit(1)
    click.echo(f"✅ Session deleted: {session_id}")


if __name__ == "__main__":
    main()
