"""Main CLI application module.

Provides the ``kit-deployer`` entry point. Settings come from
``KIT_DEPLOYER_*`` environment variables, overridden by command options.
"""

import typer

from .deploy_commands import deploy

# Create the main CLI application
app = typer.Typer(
    help="Deploy Kubernetes manifests to one or more clusters",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command()(deploy)


@app.callback()
def callback() -> None:
    """kit-deployer command line interface."""


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
