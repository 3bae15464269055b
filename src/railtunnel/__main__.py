from .client import run_cli

run_cli()
