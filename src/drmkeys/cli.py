from __future__ import annotations

import json
import logging
from pathlib import Path

import typer

from .client.attack_scenarios import (
    CrossSessionReplayAttack,
    ExpiredSessionAttack,
    MalformedHandshakeAttack,
    SegmentTamperingAttack,
    simulate_attack_scenario,
)
from .client.player_client import PlaybackClient
from .config import KeyDeliveryConfig, load_config
from .encryption import primitives, segment
from .encryption.keys import MASTER_KEY_SIZE
from .encryption.envelope import (
    EnvelopeWrappedKey,
    LocalMasterKey,
    decrypt_content_key,
    encrypt_content_key,
    generate_master_key as new_master_key,
    load_master_key_from_env,
)
from .errors import KeyDeliveryError
from .server.key_server import KeyServer, allow_all
from .storage.content_store import InMemoryContentStore
from .utils import media_io

LOGGER = logging.getLogger(__name__)

app = typer.Typer()

ENVELOPE_SUFFIX = ".envelope"


def _config(ctx: typer.Context) -> KeyDeliveryConfig:
    return ctx.obj if isinstance(ctx.obj, KeyDeliveryConfig) else KeyDeliveryConfig()


def _fail(message: str) -> None:
    typer.echo(f"ERROR: {message}", err=True)
    raise typer.Exit(code=1)


def _master_key(config: KeyDeliveryConfig) -> LocalMasterKey:
    try:
        return load_master_key_from_env(config.master_key_env)
    except ValueError as e:
        _fail(str(e))


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log verbosity"),
):
    """Session-based content key delivery tools."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    try:
        ctx.obj = load_config(config)
    except (OSError, ValueError) as e:
        _fail(f"Invalid configuration: {e}")


@app.command("generate-master-key")
def generate_master_key(
    output: str = typer.Option("", "-o", "--output", help="Write the key to this file instead of stdout"),
):
    """Generate a base64 master key for envelope encryption.

    Store it in the environment variable named by `master_key_env`
    (KMS_MASTER_KEY by default). Losing it makes every stored envelope unreadable.
    """
    key = new_master_key()
    if output:
        out_path = Path(output)
        out_path.write_text(key + "\n")
        out_path.chmod(0o600)
        typer.echo(f"Master key written to {out_path}")
    else:
        typer.echo(key)


@app.command("encrypt-asset")
def encrypt_asset(
    ctx: typer.Context,
    input: str = typer.Argument(..., help="Path to input media file"),
    output: str = typer.Option("", "-o", "--output", help="Path to write encrypted file"),
    asset_id: str = typer.Option("", "--asset-id", help="Asset identifier (defaults to the file name)"),
    chunk_size: int = typer.Option(segment.DEFAULT_CHUNK_SIZE, "--chunk-size", help="Plaintext bytes per chunk"),
):
    """Encrypt a media file under a fresh content key.

    The content key is envelope-wrapped with the master key and written to
    `<output>.envelope` next to the encrypted file.
    """
    config = _config(ctx)
    input_path = Path(input)
    if not input_path.exists():
        raise typer.BadParameter(f"Input file not found: {input}")
    if chunk_size <= 0:
        raise typer.BadParameter("--chunk-size must be positive")

    out_path = Path(output) if output else input_path.with_suffix(input_path.suffix + ".drm")
    master_key = _master_key(config)
    asset = asset_id or input_path.name
    dek = primitives.generate_content_key()

    media_kind = media_io.detect_media_kind(str(input_path))
    metadata = {"content_type": media_kind, "filename": input_path.name, "asset_id": asset}
    typer.echo(f"Encrypting {media_kind} file: {input_path} -> {out_path}")
    try:
        segment.encrypt_file(str(input_path), str(out_path), dek, chunk_size=chunk_size,
                             metadata=metadata)
        envelope = encrypt_content_key(master_key, dek)
    except KeyDeliveryError as e:
        _fail(str(e))

    envelope_path = Path(str(out_path) + ENVELOPE_SUFFIX)
    envelope_path.write_text(json.dumps({
        "asset_id": asset,
        "master_key_id": master_key.key_id,
        "envelope": envelope.to_base64(),
    }, indent=2))
    size = media_io.format_bytes(out_path.stat().st_size)
    typer.echo(f"Encryption complete ({size}). Envelope saved to: {envelope_path}")


@app.command("decrypt-asset")
def decrypt_asset(
    ctx: typer.Context,
    input: str = typer.Argument(..., help="Path to encrypted input file"),
    envelope: str = typer.Option("", "-e", "--envelope", help="Envelope file (defaults to <input>.envelope)"),
    output: str = typer.Option("", "-o", "--output", help="Path to write decrypted file"),
):
    """Decrypt a file produced by `encrypt-asset`."""
    config = _config(ctx)
    input_path = Path(input)
    if not input_path.exists():
        raise typer.BadParameter(f"Input file not found: {input}")
    envelope_path = Path(envelope) if envelope else Path(str(input_path) + ENVELOPE_SUFFIX)
    if not envelope_path.exists():
        raise typer.BadParameter(f"Envelope file not found: {envelope_path}")

    out_path = Path(output) if output else input_path.with_suffix(".dec")
    master_key = _master_key(config)

    try:
        record = json.loads(envelope_path.read_text())
        wrapped = EnvelopeWrappedKey.from_base64(record["envelope"])
    except (ValueError, KeyError, TypeError) as e:
        _fail(f"Malformed envelope file {envelope_path}: {e}")

    typer.echo(f"Decrypting file: {input_path} -> {out_path}")
    try:
        dek = decrypt_content_key(master_key, wrapped)
        metadata = segment.decrypt_file(str(input_path), str(out_path), dek)
    except (KeyDeliveryError, ValueError) as e:
        _fail(f"Decryption failed: {e}")
    typer.echo(f"Decryption complete. Metadata: {metadata}")


class _SimulatedClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@app.command("simulate-playback")
def simulate_playback(
    ctx: typer.Context,
    input: str = typer.Argument(..., help="Media file to ingest and play back"),
    asset_id: str = typer.Option("", "--asset-id", help="Asset identifier (defaults to the file name)"),
    attacks: bool = typer.Option(False, "--attacks", help="Also run the attack scenarios"),
):
    """Run ingest, handshake, key delivery and playback in one process.

    Uses the master key from the environment when set, otherwise an
    ephemeral one.
    """
    config = _config(ctx)
    input_path = Path(input)
    if not input_path.exists():
        raise typer.BadParameter(f"Input file not found: {input}")
    try:
        master_key = load_master_key_from_env(config.master_key_env)
    except ValueError:
        LOGGER.info("%s not set; using an ephemeral master key", config.master_key_env)
        master_key = LocalMasterKey(primitives.random_bytes(MASTER_KEY_SIZE))

    clock = _SimulatedClock()
    server = KeyServer(master_key, allow_all, config=config, clock=clock)
    store = InMemoryContentStore()
    asset = asset_id or input_path.name
    plaintext = b"".join(media_io.read_segments(str(input_path), segment.DEFAULT_CHUNK_SIZE))

    try:
        server.ingest_asset(asset, plaintext, store)
        client = PlaybackClient(server, store)
        client.initialize()
        played = client.play(asset)
        report = client.playback_report()
        client.terminate()
    except KeyDeliveryError as e:
        _fail(str(e))

    if played != plaintext:
        _fail("Played content does not match the original")
    typer.echo(f"[OK] Played {asset} ({media_io.format_bytes(len(played))}) "
               f"in session {report['session_id']}")

    if attacks:
        scenarios = [
            (CrossSessionReplayAttack(), (server, store, asset)),
            (SegmentTamperingAttack(), (server, store, asset)),
            (ExpiredSessionAttack(), (server, store, asset, clock.advance)),
            (MalformedHandshakeAttack(), (server,)),
        ]
        failed = False
        for scenario, args in scenarios:
            scenario.execute(*args)
            result = simulate_attack_scenario(scenario)
            status = "[OK]" if result["defended"] else "[FAIL]"
            failed = failed or not result["defended"]
            typer.echo(f"{status} {result['scenario']}")
        if failed:
            raise typer.Exit(code=1)


@app.command("show-status")
def show_status(ctx: typer.Context):
    """Show configuration and capabilities of the key-delivery system."""
    config = _config(ctx)
    typer.echo("\n" + "=" * 60)
    typer.echo("DRM Session Keys Status")
    typer.echo("=" * 60)

    typer.echo("\n[COMMANDS] Available:")
    typer.echo("  * Master Key:   generate-master-key")
    typer.echo("  * Assets:       encrypt-asset, decrypt-asset")
    typer.echo("  * Simulation:   simulate-playback [--attacks]")
    typer.echo("  * System Info:  show-status")

    typer.echo("\n[CRYPTO] Protocol:")
    typer.echo("  * Key agreement: X25519 (ephemeral, per session)")
    typer.echo(f"  * Derivation:    HKDF-SHA256, info={config.kek_info!r}")
    typer.echo("  * Wrapping:      AES-256-GCM (session), AES-256-GCM (master envelope)")
    typer.echo("  * Content:       AES-128-GCM")

    typer.echo("\n[CONFIG] Sessions:")
    typer.echo(f"  * Session TTL:   {config.session_ttl_seconds}s")
    typer.echo(f"  * Refresh TTL:   {config.refresh_ttl_seconds}s")
    typer.echo(f"  * Max batch:     {config.max_batch_size}")
    rotation = config.rotation
    typer.echo(f"  * Rotation:      max age={rotation.max_session_age_seconds}, "
               f"max deliveries={rotation.max_deliveries_per_session}")

    typer.echo("\n[MASTER KEY]")
    try:
        master_key = load_master_key_from_env(config.master_key_env)
        typer.echo(f"  * {config.master_key_env}: [OK] key id {master_key.key_id}")
    except ValueError:
        typer.echo(f"  * {config.master_key_env}: [MISSING]")

    typer.echo("\n" + "=" * 60 + "\n")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
