"""
Permite `python -m discopeer <comando>`.

Comandos:
  serve     – Arranca FastAPI + registro de peers
  discover  – Busca servidores discopeer en la LAN (mDNS)
  peers     – Consulta los peers de un grupo en un servidor
"""
from .cli import cli

if __name__ == "__main__":
    cli()
