# discopeer/cli.py

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Annotated, Optional

import requests
import typer

from .config import FORWARDED_HOPS

cli = typer.Typer(
    add_completion=False,
    help="CLI principal de discopeer. Usa ‘discopeer <comando> --help’ para detalles.",
    no_args_is_help=True,
)

# ───────────────── Opciones ─────────────────

# --- Opciones del Servidor ---
HostOpt = Annotated[str, typer.Option("--host", "-H", help="Interfaz de red para el servidor.", rich_help_panel="Parámetros del Servidor")]
PortOpt = Annotated[int, typer.Option("--port", "-p", help="Puerto HTTP/WebSocket.", rich_help_panel="Parámetros del Servidor")]
MdnsOpt = Annotated[bool, typer.Option("--mdns/--no-mdns", help="Anunciar el servidor en la LAN vía mDNS.", rich_help_panel="Parámetros del Servidor")]
HopOpt = Annotated[str, typer.Option("--forwarded-hop", help=f"Salto de X-Forwarded-For a usar ({', '.join(FORWARDED_HOPS)}).", rich_help_panel="Parámetros del Servidor")]
RateOpt = Annotated[int, typer.Option("--rate-limit", min=0, help="Peticiones por IP y ventana (0 = sin límite).", rich_help_panel="Parámetros del Servidor")]

# --- Opciones del Registro ---
MaxGroupsOpt = Annotated[int, typer.Option("--max-groups", min=1, help="Capacidad máxima de grupos (LRU).", rich_help_panel="Parámetros del Registro")]
MaxAgeOpt = Annotated[int, typer.Option("--max-group-age", min=1, help="Techo del TTL de un grupo, en segundos.", rich_help_panel="Parámetros del Registro")]
PersistOpt = Annotated[Optional[Path], typer.Option("--persistence-file", dir_okay=False, help="Fichero JSON donde guardar el registro al parar.", rich_help_panel="Parámetros del Registro")]
IntervalOpt = Annotated[int, typer.Option("--snapshot-interval", min=0, help="Guardar el snapshot cada N segundos (0 = sólo al parar).", rich_help_panel="Parámetros del Registro")]


# ─────────────── Comandos ───────────────

@cli.command()
def serve(
    # --- Opciones del Servidor ---
    host: HostOpt = "0.0.0.0",
    port: PortOpt = 3000,
    mdns: MdnsOpt = False,
    forwarded_hop: HopOpt = "last",
    rate_limit: RateOpt = 100,
    # --- Opciones del Registro ---
    max_groups: MaxGroupsOpt = 10_000,
    max_group_age: MaxAgeOpt = 24 * 60 * 60,
    persistence_file: PersistOpt = None,
    snapshot_interval: IntervalOpt = 0,
) -> None:
    """Lanza la API REST + WebSocket del registro de peers."""
    if forwarded_hop not in FORWARDED_HOPS:
        typer.secho(f"❌  --forwarded-hop debe ser uno de: {', '.join(FORWARDED_HOPS)}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)

    # Configura el entorno para el proceso de Uvicorn
    env = os.environ.copy()
    env.update({
        "HOST": host,
        "PORT": str(port),
        "MAX_GROUPS": str(max_groups),
        "MAX_GROUP_AGE": str(max_group_age),
        "RATE_LIMIT_MAX": str(rate_limit),
        "FORWARDED_HOP": forwarded_hop,
        "SNAPSHOT_INTERVAL": str(snapshot_interval),
        "MDNS_ANNOUNCE": "1" if mdns else "0",
    })
    if persistence_file:
        env["PERSISTENCE_FILE"] = str(persistence_file.expanduser().resolve())

    # Lanza el servidor
    typer.echo(f"🚀  Levantando discopeer en http://{host}:{port}")
    typer.echo(f"   • Grupos máx.: {max_groups}, TTL máx. de grupo: {max_group_age}s")
    if persistence_file:
        typer.echo(f"   • Persistencia: {persistence_file.name}")
    if mdns:
        typer.echo("   • Anuncio mDNS activado")

    try:
        subprocess.run(
            [sys.executable, "-m", "uvicorn", "discopeer.server.api:app", "--host", host, "--port", str(port)],
            check=True,
            env=env,
        )
    except subprocess.CalledProcessError:
        # Uvicorn usualmente es interrumpido con Ctrl+C, lo cual es normal.
        typer.echo("\n👋  Servidor detenido.")
    except Exception as e:
        typer.secho(f"💥 Error inesperado al lanzar Uvicorn: {e}", fg="red")
        raise typer.Exit(1)


@cli.command()
def discover(timeout: Annotated[int, typer.Option("--timeout", "-t", help="Segundos de búsqueda.")] = 5) -> None:
    """Busca servidores discopeer en la LAN vía mDNS."""
    from .discovery.mdns import discover_nodes
    nodes = discover_nodes(timeout=timeout)
    if nodes:
        typer.secho("🌐  Servidores discopeer encontrados:", bold=True)
        for n in nodes:
            typer.echo(f" • {n.host}:{n.port} – {n.info or 'sin descripción'}")
    else:
        typer.secho("🙁  No se detectaron servidores.", fg=typer.colors.YELLOW)


@cli.command()
def peers(
    secret_hash: Annotated[str, typer.Argument(help="Clave secreta compartida del grupo.")],
    url: Annotated[str, typer.Option("--url", "-u", envvar="DISCOPEER_URL", help="URL base del servidor.")] = "http://localhost:3000",
    ndjson: Annotated[bool, typer.Option("--ndjson", help="Usar el endpoint NDJSON en streaming.")] = False,
    raw: Annotated[bool, typer.Option("--raw", help="Imprimir cada peer como JSON.")] = False,
    timeout: Annotated[float, typer.Option("--timeout", "-t", help="Timeout HTTP en segundos.")] = 10.0,
) -> None:
    """Lista los peers activos de un grupo en un servidor discopeer."""
    base = url.rstrip("/")
    found = []
    try:
        if ndjson:
            with requests.get(f"{base}/discovery/{secret_hash}/ndjson", stream=True, timeout=timeout) as response:
                response.raise_for_status()
                for line in response.iter_lines(decode_unicode=True):
                    if line:
                        found.append(json.loads(line))
        else:
            response = requests.get(f"{base}/discovery/{secret_hash}", timeout=timeout)
            response.raise_for_status()
            found = response.json().get("peers", [])
    except requests.exceptions.RequestException as e:
        typer.secho(f"❌  Error de conexión: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if raw:
        for peer in found:
            typer.echo(json.dumps(peer))
        return
    if not found:
        typer.secho("🙁  Ningún peer activo en ese grupo.", fg=typer.colors.YELLOW)
        return
    typer.secho(f"👥  {len(found)} peer(s) activos:", bold=True)
    for peer in found:
        typer.echo(f" • {peer['name']} → {peer['endpoint']} (id {peer['peerId']}, {peer['age']}s, desde {peer['sourceAddress']})")


def _main() -> None:
    cli()

if __name__ == "__main__":
    _main()
