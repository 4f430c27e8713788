"""CLI entry point for search.

Allows searching mirrored messages and sessions via command line:
    python -m agentmesh.search messages "query"
"""

import sys
from datetime import datetime
from typing import Any

import click

from agentmesh.config import load_config
from agentmesh.logging import setup_logging
from agentmesh.search.indexer import TypesenseIndexer


def format_timestamp(ts: int) -> str:
    """Format timestamp for display."""
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def print_message(hit: dict[str, Any], verbose: bool = False) -> None:
    """Print a message search hit."""
    doc = hit["document"]

    content = doc["content"]
    for hl in hit.get("highlights", []):
        if hl["field"] == "content":
            content = hl["snippet"]
            break

    # Swap highlight tags for terminal bold
    content = content.replace("<mark>", "\033[1m").replace("</mark>", "\033[0m")

    click.echo(f"\033[36m[{format_timestamp(doc['ts'])}]\033[0m \033[32m{doc['source_tool']}\033[0m ({doc['role']})")
    click.echo(f"Session: {doc['session_id']}")
    if verbose and doc.get("model_id"):
        click.echo(f"Model: {doc['model_id']}")

    click.echo(f"\n{content}\n")
    click.echo("-" * 40)


def print_session(hit: dict[str, Any], verbose: bool = False) -> None:
    """Print a session search hit."""
    doc = hit["document"]

    click.echo(f"\033[36m[{format_timestamp(doc['last_ts'])}]\033[0m \033[1m{doc['title']}\033[0m")
    click.echo(f"Source: \033[32m{doc['source_tool']}\033[0m | Messages: {doc['message_count']}")
    click.echo(f"ID: {doc['id']}")
    if verbose and doc.get("project"):
        click.echo(f"Project: {doc['project']}")

    if doc.get("summary"):
        click.echo(f"Summary: {doc['summary']}")
    click.echo("-" * 40)


@click.group()
def cli() -> None:
    """Search ingested session history."""
    setup_logging("search")


@cli.command()
@click.argument("query")
@click.option("--source-tool", help="Filter by source tool slug (e.g. claude-code, opencode)")
@click.option("--role", help="Filter by role (user, assistant, tool)")
@click.option("--session", "session_id", help="Filter by session id")
@click.option("--limit", "-n", default=10, help="Number of results")
@click.option("--verbose", "-v", is_flag=True, help="Show more details")
def messages(
    query: str,
    source_tool: str | None,
    role: str | None,
    session_id: str | None,
    limit: int,
    verbose: bool,
) -> None:
    """Search individual messages."""
    config = load_config()
    indexer = TypesenseIndexer(config.typesense)

    filters = {"source_tool": source_tool, "role": role, "session_id": session_id}

    try:
        results = indexer.search_messages(query, per_page=limit, filters=filters)
    except Exception as e:
        click.echo(f"Error searching messages: {e}", err=True)
        sys.exit(1)

    hits = results.get("hits", [])
    click.echo(f"Found {results.get('found', 0)} messages (showing {len(hits)}):\n")

    for hit in hits:
        print_message(hit, verbose)


@cli.command()
@click.argument("query")
@click.option("--source-tool", help="Filter by source tool slug")
@click.option("--project", help="Filter by project path")
@click.option("--limit", "-n", default=10, help="Number of results")
@click.option("--verbose", "-v", is_flag=True, help="Show more details")
def sessions(query: str, source_tool: str | None, project: str | None, limit: int, verbose: bool) -> None:
    """Search sessions."""
    config = load_config()
    indexer = TypesenseIndexer(config.typesense)

    filters = {"source_tool": source_tool, "project": project}

    try:
        results = indexer.search_sessions(query, per_page=limit, filters=filters)
    except Exception as e:
        click.echo(f"Error searching sessions: {e}", err=True)
        sys.exit(1)

    hits = results.get("hits", [])
    click.echo(f"Found {results.get('found', 0)} sessions (showing {len(hits)}):\n")

    for hit in hits:
        print_session(hit, verbose)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
