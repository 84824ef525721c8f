"""Custom Click group with automatic help display on errors."""

import sys
from typing import Any

import click


class HvfleetGroup(click.Group):
    """Click group that shows the relevant help text when a command is misused."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().main(*args, **kwargs)
        except (
            click.exceptions.UsageError,
            click.exceptions.BadParameter,
            click.exceptions.MissingParameter,
        ) as e:
            click.echo(f"Error: {e.format_message()}", err=True)
            ctx = e.ctx if hasattr(e, "ctx") and e.ctx else None
            if ctx:
                click.echo("")
                click.echo(ctx.get_help())
                ctx.exit(e.exit_code if hasattr(e, "exit_code") else 1)
                return None
            sys.exit(e.exit_code if hasattr(e, "exit_code") else 1)
            return None

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except (
            click.exceptions.UsageError,
            click.exceptions.BadParameter,
            click.exceptions.MissingParameter,
        ) as e:
            click.echo(f"Error: {e.format_message()}", err=True)

            # Prefer the subcommand context when there is one
            error_ctx = e.ctx if hasattr(e, "ctx") and e.ctx else ctx
            click.echo("")
            click.echo(error_ctx.get_help())
            error_ctx.exit(e.exit_code if hasattr(e, "exit_code") else 1)
            return None

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            if isinstance(e, click.exceptions.MissingParameter | click.exceptions.BadParameter):
                raise
            click.echo(f"Error: {e.format_message()}", err=True)
            click.echo("")
            click.echo(ctx.get_help())
            ctx.exit(1)
            return None, None, []


# Subgroups created with @main.group() also use HvfleetGroup
HvfleetGroup.group_class = HvfleetGroup
