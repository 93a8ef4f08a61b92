"""
Main CLI entry point for adorb
"""

import click

from .. import __version__
from ..core.observability import setup_logfire
from .rag import rag_group


@click.group()
@click.version_option(version=__version__)
def cli():
    """
    adorb - Ad success prediction with hybrid retrieval

    Score new ad creatives against historical ads, explain which traits
    drive performance, and find where more data is needed.
    """
    setup_logfire()


@cli.command(name="serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Run the REST API."""
    import uvicorn

    uvicorn.run("adorb.api.app:app", host=host, port=port, reload=reload)


# Register command groups
cli.add_command(rag_group)


if __name__ == '__main__':
    cli()
