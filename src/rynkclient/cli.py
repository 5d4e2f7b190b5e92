"""CLI interface for rynkclient."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click

from . import __version__
from .config import API_BASE_URL, JOB_MAX_ATTEMPTS, JOB_POLL_INTERVAL, MESSAGE_PAGE_SIZE, REQUEST_TIMEOUT


@click.group()
@click.version_option(version=__version__, prog_name="rynk")
@click.option("--verbose", "-v", is_flag=True, help="Log requests and stream events to stderr")
@click.option("--base-url", default=API_BASE_URL, show_default=True, help="API root URL")
@click.option("--token", envvar="RYNK_TOKEN", help="Bearer token (or set RYNK_TOKEN)")
@click.option("--guest", is_flag=True, help="Use the guest endpoints even if a token is set")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, base_url: str, token: str | None, guest: bool):
    """rynk: chat with the rynk backend from the terminal.

    Without a token the guest endpoints are used, which are limited by
    credits. Replies stream to stdout; logs and status go to stderr.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {
        "base_url": base_url,
        "token": None if guest else token,
        "family": "guest" if guest or not token else "mobile",
    }


def _api(obj: dict):
    from .client import ApiClient

    return ApiClient(obj["base_url"], family=obj["family"], token=obj["token"])


class _Renderer:
    """Prints status pills to stderr and the growing reply to stdout.

    Content events carry the whole text so far; only the unseen suffix is
    written, and a rewrite that does not extend the shown text starts over.
    """

    def __init__(self):
        self.shown = ""
        self.pills = 0

    def __call__(self, session):
        for pill in session.status_pills[self.pills:]:
            click.echo(click.style(f"[{pill.phase}] {pill.message}", dim=True), err=True)
        self.pills = len(session.status_pills)

        text = session.content
        if text == self.shown:
            return
        if text.startswith(self.shown):
            click.echo(text[len(self.shown):], nl=False)
        else:
            click.echo()
            click.echo(text, nl=False)
        self.shown = text

    def reset(self):
        self.shown = ""
        self.pills = 0


async def _chat(obj: dict, messages: list[str], conversation_id: str | None, polled: bool):
    from .controller import ConversationController
    from .exceptions import CreditExhausted, RynkError

    async with _api(obj) as api:
        chat = ConversationController(api, delivery="polled" if polled else "incremental")
        renderer = _Renderer()
        chat.session.subscribe(renderer)
        if conversation_id:
            await chat.select_conversation(conversation_id)

        interactive = not messages
        try:
            while True:
                if interactive:
                    try:
                        text = click.prompt(click.style("you", bold=True), prompt_suffix="> ", default="", show_default=False)
                    except click.Abort:
                        break
                    if not text.strip():
                        break
                else:
                    if not messages:
                        break
                    text = messages.pop(0)

                renderer.reset()
                try:
                    await chat.send_message(text)
                except CreditExhausted as exc:
                    click.echo()
                    click.echo(click.style(str(exc), fg="yellow"), err=True)
                    break
                except RynkError as exc:
                    click.echo()
                    click.echo(click.style(f"Error: {exc}", fg="red"), err=True)
                    if not interactive:
                        raise click.exceptions.Exit(1)
                    continue
                click.echo()

                if chat.credits.remaining is not None:
                    click.echo(click.style(f"{chat.credits.remaining} credits left", dim=True), err=True)
        finally:
            await chat.aclose()

        if chat.current_conversation_id:
            click.echo(f"Conversation: {chat.current_conversation_id}", err=True)


@cli.command()
@click.argument("message", nargs=-1)
@click.option("--conversation", "-c", "conversation_id", help="Continue an existing conversation")
@click.option("--polled", is_flag=True, help="Read the reply as a growing buffer instead of deltas")
@click.pass_obj
def chat(obj: dict, message: tuple[str, ...], conversation_id: str | None, polled: bool):
    """Send a message and stream the reply.

    With no MESSAGE, starts an interactive session; an empty line exits.

    Example:
        rynk --guest chat "What is the capital of France?"
    """
    messages = [" ".join(message)] if message else []
    asyncio.run(_chat(obj, messages, conversation_id, polled))


@cli.command()
@click.argument("body_file", type=click.File("r"))
@click.option("--chunk-size", default=0, type=click.IntRange(min=0), help="Split the body into chunks of N characters (0 = one chunk)")
@click.option("--polled", is_flag=True, help="Feed growing totals instead of deltas")
def replay(body_file, chunk_size: int, polled: bool):
    """Run a captured response body through the demultiplexer.

    Prints one JSON object per event. Useful for checking how a recorded
    stream is split into content, status and search-result events.
    """
    from .demux import demux_chunks

    body = body_file.read()
    size = chunk_size or max(len(body), 1)
    chunks = [body[i:i + size] for i in range(0, len(body), size)]

    for event in demux_chunks(chunks, polled=polled):
        click.echo(json.dumps(event.model_dump(mode="json")))


async def _list_conversations(obj: dict):
    from .controller import ConversationController

    async with _api(obj) as api:
        return await ConversationController(api).load_conversations()


@cli.command()
@click.pass_obj
def conversations(obj: dict):
    """List your conversations, pinned first."""
    from .exceptions import RynkError

    try:
        convs = asyncio.run(_list_conversations(obj))
    except RynkError as exc:
        raise click.ClickException(str(exc)) from exc

    if not convs:
        click.echo("No conversations yet.")
        return

    convs = sorted(convs, key=lambda c: (not c.is_pinned, -c.updated_at.timestamp()))
    for conv in convs:
        pin = "*" if conv.is_pinned else " "
        updated = conv.updated_at.strftime("%Y-%m-%d %H:%M")
        click.echo(f"{pin} {conv.id}  {updated}  {conv.title or '(untitled)'}")


@cli.command()
@click.pass_obj
def config(obj: dict):
    """Print the effective configuration."""
    click.echo()
    click.echo(click.style("rynk configuration", bold=True))
    click.echo(f"  Base URL:        {obj['base_url']}")
    click.echo(f"  Endpoints:       {obj['family']}")
    click.echo(f"  Token:           {'set' if obj['token'] else 'not set'}")
    click.echo(f"  Timeout:         {REQUEST_TIMEOUT:g}s")
    click.echo(f"  Page size:       {MESSAGE_PAGE_SIZE}")
    click.echo(f"  Job polling:     every {JOB_POLL_INTERVAL:g}s, {JOB_MAX_ATTEMPTS} attempts")
    click.echo()
