import json
import os
import asyncio

from typer import Typer, Option, Argument, Exit
from typing import Annotated, Any, Awaitable, Callable
from rich.panel import Panel
from rich.table import Table
from rich.console import Console

from .backends import DuckDBContentStore
from .config import EngineSettings, resolve_db_path
from .embeddings import EmbeddingProvider
from .engine import DiscoveryEngine
from .errors import DiscoveryError
from .llm import GeminiLanguageService
from .logs import configure_logging
from .models import ContentType, DiscoveryResponse, RetrievalFilters
from .orchestrator import ProgressEvent
from .topics import TopicsResponse

app = Typer(help="Search, recommend and surface trending community content and topics.")

_STAGE_MESSAGES = {
    "expanding": "Retrieving candidates...",
    "retrieving": "Ranking candidates...",
}


def build_engine(db_path: str | None = None) -> tuple[DiscoveryEngine, DuckDBContentStore]:
    store = DuckDBContentStore(resolve_db_path(db_path))
    embedder = None
    language_service = None
    if os.getenv("GOOGLE_API_KEY"):
        embedder = EmbeddingProvider()
        language_service = GeminiLanguageService()
    engine = DiscoveryEngine(
        store,
        store,
        embedder=embedder,
        language_service=language_service,
        settings=EngineSettings.from_env(),
    )
    return engine, store


def render_response(console: Console, response: DiscoveryResponse, title: str) -> None:
    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right", style="bold")
    table.add_column("Type", style="cyan")
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Score", justify="right")
    table.add_column("Sources")
    table.add_column("Reason", style="dim")
    for result in response.results:
        marker = " *" if result.serendipitous else ""
        table.add_row(
            str(result.rank),
            result.content_type,
            result.id,
            result.candidate.title or "-",
            f"{result.final_score:.3f}{marker}",
            ", ".join(result.sources),
            result.reason,
        )
    console.print(table)

    lines = [
        f"[bold]Search type:[/] {response.search_type}",
        f"[bold]Algorithms:[/] {', '.join(response.algorithms_used) or '-'}",
        f"[bold]Expansion:[/] {'yes' if response.expansion_applied else 'no'}"
        f" ({len(response.queries)} queries)",
        f"[bold]Diversity:[/] {'yes' if response.diversity_applied else 'no'}",
        f"[bold]Serendipity:[/] {'yes' if response.serendipity_applied else 'no'}",
        f"[bold]Reranking:[/] {'yes' if response.reranking_applied else 'no'}",
    ]
    if response.degraded:
        lines.append(f"[bold yellow]Degraded:[/] {', '.join(response.degraded)}")
    border = "bold yellow" if response.degraded else "bold green"
    console.print(
        Panel("\n".join(lines), title="Status", title_align="left", border_style=border)
    )


def print_json(console: Console, response: DiscoveryResponse) -> None:
    payload = {
        "search_type": response.search_type,
        "algorithms_used": response.algorithms_used,
        "degraded": response.degraded,
        "results": [result.to_dict() for result in response.results],
    }
    console.print_json(json.dumps(payload, default=str))


async def _run(
    start: Callable[[DiscoveryEngine], Any],
    title: str,
    *,
    db_path: str | None,
    as_json: bool,
) -> None:
    console = Console()
    engine, store = build_engine(db_path)
    try:
        handler = start(engine)
        with console.status(status="Working on your request...") as status:
            async for event in handler.stream_events():
                if isinstance(event, ProgressEvent):
                    status.update(_STAGE_MESSAGES.get(event.stage, "Working..."))
            result = await handler
        response = result.response
    finally:
        store.close()
    if as_json:
        print_json(console, response)
    else:
        render_response(console, response, title)


async def run_search(
    query: str,
    *,
    config: dict[str, Any],
    content_types: list[ContentType] | None = None,
    filters: RetrievalFilters | None = None,
    db_path: str | None = None,
    as_json: bool = False,
) -> None:
    await _run(
        lambda engine: engine.start_search(
            query, config, filters=filters, content_types=content_types
        ),
        f"Results for '{query}'",
        db_path=db_path,
        as_json=as_json,
    )


async def run_recommend(
    user_id: str,
    *,
    config: dict[str, Any],
    db_path: str | None = None,
    as_json: bool = False,
) -> None:
    await _run(
        lambda engine: engine.start_recommend(user_id, config),
        f"Recommended for {user_id}",
        db_path=db_path,
        as_json=as_json,
    )


def render_topics(console: Console, response: TopicsResponse, title: str) -> None:
    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right", style="bold")
    table.add_column("Topic", style="cyan")
    table.add_column("Posts", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Engagement", justify="right")
    table.add_column("Keywords", style="dim")
    for rank, cluster in enumerate(response.clusters, start=1):
        table.add_row(
            str(rank),
            cluster.name,
            str(cluster.post_count),
            f"{cluster.score:.3f}",
            str(cluster.engagement),
            ", ".join(cluster.keywords),
        )
    console.print(table)

    lines = [f"[bold]Search type:[/] {response.search_type}"]
    if response.degraded:
        lines.append(f"[bold yellow]Degraded:[/] {', '.join(response.degraded)}")
    border = "bold yellow" if response.degraded else "bold green"
    console.print(
        Panel("\n".join(lines), title="Status", title_align="left", border_style=border)
    )


async def run_trending(
    *,
    config: dict[str, Any],
    time_range: str = "week",
    db_path: str | None = None,
    as_json: bool = False,
) -> None:
    await _run(
        lambda engine: engine.start_trending(config, time_range=time_range),
        f"Trending this {time_range}" if time_range != "all" else "Trending",
        db_path=db_path,
        as_json=as_json,
    )


def _invoke(coro: Awaitable[None]) -> None:
    try:
        asyncio.run(coro)
    except DiscoveryError as exc:
        Console(stderr=True).print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=1)


def _common_config(
    limit: int, seed: int | None, rerank: bool, serendipity: bool
) -> dict[str, Any]:
    config: dict[str, Any] = {
        "limit": limit,
        "enable_reranking": rerank,
        "enable_serendipity": serendipity,
    }
    if seed is not None:
        config["seed"] = seed
    return config


DbPathOption = Annotated[
    str | None,
    Option("--db-path", help="DuckDB path (defaults to DISCOVERY_DB_PATH or ~/.discovery_engine)."),
]
LimitOption = Annotated[int, Option("--limit", "-n", help="Number of results to return.")]
SeedOption = Annotated[
    int | None, Option("--seed", help="Seed for serendipity, for reproducible output.")
]
RerankOption = Annotated[
    bool, Option("--rerank/--no-rerank", help="Let the language model reorder the top results.")
]
SerendipityOption = Annotated[
    bool, Option("--serendipity/--no-serendipity", help="Mix in a few unexpected results.")
]
JsonOption = Annotated[bool, Option("--json", help="Print results as JSON.")]
LogLevelOption = Annotated[
    str | None, Option("--log-level", help="Log level (defaults to DISCOVERY_LOG_LEVEL).")
]


@app.command()
def search(
    query: Annotated[str, Argument(help="What to search for.")],
    content_type: Annotated[
        list[str] | None,
        Option("--type", "-t", help="Content type to search; repeat for several."),
    ] = None,
    category: Annotated[
        str | None, Option("--category", help="Only return content from this category id.")
    ] = None,
    time_range: Annotated[
        str, Option("--time-range", help="day, week, month, year or all.")
    ] = "all",
    sort: Annotated[str, Option("--sort", help="relevance or new.")] = "relevance",
    expansion: Annotated[
        bool, Option("--expand/--no-expand", help="Expand the query with the language model.")
    ] = True,
    limit: LimitOption = 10,
    seed: SeedOption = None,
    rerank: RerankOption = False,
    serendipity: SerendipityOption = True,
    db_path: DbPathOption = None,
    as_json: JsonOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Search content with query expansion and multi-query retrieval."""
    configure_logging(log_level)
    config = _common_config(limit, seed, rerank, serendipity)
    config["enable_query_expansion"] = expansion
    try:
        filters = RetrievalFilters(category_id=category, time_range=time_range, sort=sort)
    except ValueError as exc:
        Console(stderr=True).print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=2)
    _invoke(
        run_search(
            query,
            config=config,
            content_types=content_type or None,
            filters=filters,
            db_path=db_path,
            as_json=as_json,
        )
    )


@app.command()
def recommend(
    user_id: Annotated[str, Argument(help="User to recommend content for.")],
    algorithm: Annotated[
        str, Option("--algorithm", "-a", help="collaborative, content or hybrid.")
    ] = "hybrid",
    limit: LimitOption = 10,
    seed: SeedOption = None,
    rerank: RerankOption = False,
    serendipity: SerendipityOption = True,
    db_path: DbPathOption = None,
    as_json: JsonOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Recommend content from a user's interaction history."""
    configure_logging(log_level)
    config = _common_config(limit, seed, rerank, serendipity)
    config["algorithm"] = algorithm
    _invoke(run_recommend(user_id, config=config, db_path=db_path, as_json=as_json))


@app.command()
def trending(
    time_range: Annotated[
        str, Option("--time-range", help="day, week, month, year or all.")
    ] = "week",
    limit: LimitOption = 10,
    seed: SeedOption = None,
    serendipity: SerendipityOption = True,
    db_path: DbPathOption = None,
    as_json: JsonOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Show content with the most engagement in a recent window."""
    configure_logging(log_level)
    config = _common_config(limit, seed, False, serendipity)
    _invoke(
        run_trending(config=config, time_range=time_range, db_path=db_path, as_json=as_json)
    )


async def run_topics(
    *,
    time_range: str = "month",
    limit: int = 10,
    min_posts: int = 3,
    db_path: str | None = None,
    as_json: bool = False,
) -> None:
    console = Console()
    engine, store = build_engine(db_path)
    try:
        with console.status(status="Clustering recent posts..."):
            response = await engine.topics(
                time_range=time_range, limit=limit, min_posts=min_posts
            )
    finally:
        store.close()
    if as_json:
        console.print_json(json.dumps(response.to_dict(), default=str))
    else:
        render_topics(
            console, response, f"Topics this {time_range}" if time_range != "all" else "Topics"
        )


@app.command()
def topics(
    time_range: Annotated[
        str, Option("--time-range", help="day, week, month, year or all.")
    ] = "month",
    limit: Annotated[int, Option("--limit", "-n", help="Number of topics to return.")] = 10,
    min_posts: Annotated[
        int, Option("--min-posts", help="Posts a topic needs before it is listed.")
    ] = 3,
    db_path: DbPathOption = None,
    as_json: JsonOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Group recent posts into topic clusters."""
    configure_logging(log_level)
    _invoke(
        run_topics(
            time_range=time_range,
            limit=limit,
            min_posts=min_posts,
            db_path=db_path,
            as_json=as_json,
        )
    )
