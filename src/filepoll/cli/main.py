"""
Main CLI entry point.
"""

import typer

from filepoll import __version__
from filepoll.cli import configs, history, serve, trigger, validate


def version_callback(value: bool):
    """Callback to display version and exit."""
    if value:
        typer.echo(f"filepoll version {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="filepoll",
    help="filepoll - scheduled file discovery for FTP, SFTP, HTTP and S3 sources",
    add_completion=True,
)

# Register subcommands
app.add_typer(serve.app, name="serve")
app.add_typer(configs.app, name="configs")
app.add_typer(history.app, name="history")
app.command(name="trigger")(trigger.trigger)
app.command(name="validate")(validate.validate)


@app.callback(invoke_without_command=True)
def entrypoint(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
):
    """
    filepoll - scheduled file discovery for FTP, SFTP, HTTP and S3 sources.

    Run 'filepoll <command> --help' for help on a specific command.
    """
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
