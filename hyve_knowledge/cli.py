"""Typer-based CLI for the Hyve knowledge base."""

from __future__ import annotations

import logging
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, config, config_manager
from .config_manager import KnowledgeConfig
from .embeddings import PROVIDERS, EmbeddingError, get_provider
from .index_manager import CorpusIndexManager
from .models import Corpus, EmbeddingPurpose
from .search import RetrievalService
from .server import KnowledgeToolServer
from .storage import GraphStore, StoreError

console = Console()
# stdout carries the RPC channel under ``hk serve``; everything else goes here.
err_console = Console(stderr=True)

app = typer.Typer(
    help="Hyve Knowledge: hybrid graph + vector search over code, UI, game data and docs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="Show or change configuration.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"Hyve Knowledge v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging on stderr."),
):
    """Hyve Knowledge: query the local knowledge base or serve it to a host over stdio."""
    _configure_logging(verbose)


# ===================================================================
# Helpers
# ===================================================================

def _parse_corpora(values: Optional[List[str]]) -> List[Corpus]:
    if not values:
        return list(Corpus)
    try:
        return [Corpus.from_id(v.strip().lower()) for v in values]
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _open_store(cfg: KnowledgeConfig) -> GraphStore:
    db_path = cfg.db_path()
    if not db_path.exists():
        err_console.print(f"[red]Knowledge database not found at {db_path}[/red]")
        err_console.print("Populate it with your ingestion pipeline, then run 'hk build-index'.")
        raise typer.Exit(code=1)
    try:
        return GraphStore(db_path)
    except StoreError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


def _open_service(cfg: KnowledgeConfig) -> RetrievalService:
    store = _open_store(cfg)
    return RetrievalService(store, CorpusIndexManager(cfg), cfg)


# ===================================================================
# Commands
# ===================================================================

@app.command("serve")
def serve():
    """Run the JSON-RPC tool server on stdin/stdout."""
    log = logging.getLogger("hyve_knowledge.serve")
    cfg = config_manager.load_knowledge_config()
    log.info("Embedding provider: %s", cfg.provider)
    log.info("Index path: %s", cfg.resolved_index_path())

    service = _open_service(cfg)
    for corpus in Corpus:
        path = service.index_manager.index_path(corpus)
        if path.exists():
            log.info("Vector index found for %s: %s", corpus.display_name, path)
        else:
            log.warning(
                "Vector index missing for %s: %s (vector search unavailable for this corpus)",
                corpus.display_name,
                path,
            )
    try:
        KnowledgeToolServer(service).serve()
    except KeyboardInterrupt:
        log.info("Interrupted")
    finally:
        service.close()


@app.command("search")
def search(
    query: str = typer.Argument(..., help="Natural-language query."),
    corpus: Optional[List[str]] = typer.Option(None, "--corpus", "-c", help="Corpus id; repeatable (default: all)."),
    limit: int = typer.Option(10, min=1, max=config.MAX_TOOL_LIMIT, help="Results per corpus."),
    expand: bool = typer.Option(False, "--expand/--no-expand", help="Also follow cross-corpus graph links."),
):
    """Search the knowledge base and print ranked results."""
    corpora = _parse_corpora(corpus)
    cfg = config_manager.load_knowledge_config()
    service = _open_service(cfg)
    try:
        results = service.search(query, corpora, limit, expand=expand)
    finally:
        service.close()

    if not results:
        console.print("No matches found.")
        raise typer.Exit(code=0)

    table = Table(title=f"Results for '{query}'", show_header=True, show_lines=False)
    table.add_column("Score", justify="right", style="green", width=7)
    table.add_column("Corpus", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Location")
    table.add_column("Via", style="magenta")
    for r in results:
        via = r.source.value
        if r.bridged_from:
            via = f"{r.bridge_edge_type} <- {r.bridged_from}"
        location = f"{r.file_path}:{r.line_start}" if r.file_path else ""
        table.add_row(f"{r.score:.3f}", r.corpus, r.display_name, location, via)
    console.print(table)


@app.command("stats")
def stats(
    corpus: Optional[List[str]] = typer.Argument(None, help="Corpus ids (default: all)."),
):
    """Show node, edge and index statistics per corpus."""
    corpora = _parse_corpora(corpus)
    cfg = config_manager.load_knowledge_config()
    service = _open_service(cfg)
    try:
        table = Table(title="Knowledge Base", show_header=True)
        table.add_column("Corpus", style="cyan")
        table.add_column("Nodes", justify="right")
        table.add_column("Edges", justify="right")
        table.add_column("Vector index")
        table.add_column("Types")
        for c in corpora:
            s = service.get_corpus_stats(c)
            types = ", ".join(f"{k}={v}" for k, v in sorted(s.type_breakdown.items()))
            table.add_row(
                c.display_name,
                str(s.node_count),
                str(s.edge_count),
                "[green]loaded[/green]" if s.vector_index_loaded else "[yellow]missing[/yellow]",
                types or "-",
            )
        console.print(table)
    finally:
        service.close()


@app.command("build-index")
def build_index(
    corpus: List[str] = typer.Argument(..., help="Corpus ids to (re)build, or 'all'."),
):
    """Embed each corpus's nodes and rebuild its vector index."""
    corpora = list(Corpus) if [c.lower() for c in corpus] == ["all"] else _parse_corpora(corpus)
    cfg = config_manager.load_knowledge_config()
    store = _open_store(cfg)
    manager = CorpusIndexManager(cfg)
    failed = False
    try:
        for c in corpora:
            try:
                count = manager.rebuild(store, c)
            except (EmbeddingError, ValueError) as exc:
                failed = True
                store.record_index_error(type(exc).__name__, str(exc), file_path=str(manager.index_path(c)))
                err_console.print(f"[red]{c.display_name}: {exc}[/red]")
                continue
            console.print(f"[green]{c.display_name}[/green]: indexed {count} vectors -> {manager.index_path(c)}")
    finally:
        manager.close_all()
        store.close()
    if failed:
        raise typer.Exit(code=1)


@app.command("validate")
def validate():
    """Check that the configured embedding provider is reachable for both purposes."""
    cfg = config_manager.load_knowledge_config()
    ok = True
    for purpose in EmbeddingPurpose:
        provider = get_provider(cfg, purpose)
        try:
            provider.validate()
        except EmbeddingError as exc:
            ok = False
            console.print(f"[red]FAIL[/red] {purpose.value}: {provider.model_id} ({exc})")
        else:
            console.print(f"[green]OK[/green]   {purpose.value}: {provider.model_id} (dim={provider.dimension})")
        finally:
            provider.close()
    if not ok:
        raise typer.Exit(code=1)


# ===================================================================
# config
# ===================================================================

@config_app.command("show")
def config_show():
    """Print the effective configuration (env > file > defaults)."""
    cfg = config_manager.load_knowledge_config()
    lines = [
        f"[bold]Config file:[/bold] {config.CONFIG_FILE}",
        f"[bold]Database:[/bold]    {cfg.db_path()}",
        f"[bold]Indices:[/bold]     {cfg.index_dir()}",
        "",
        f"[cyan]provider[/cyan]          {cfg.provider}",
        f"[cyan]code model[/cyan]        {cfg.model_for(EmbeddingPurpose.CODE)}",
        f"[cyan]text model[/cyan]        {cfg.model_for(EmbeddingPurpose.TEXT)}",
    ]
    if cfg.provider == "ollama":
        lines.append(f"[cyan]ollama url[/cyan]        {cfg.ollama_url}")
    if cfg.provider == "voyage":
        lines.append(f"[cyan]voyage api key[/cyan]    {'set' if cfg.voyage_api_key else 'missing'}")
    lines += [
        "",
        f"results per corpus     {cfg.results_per_corpus}",
        f"expansion discount     {cfg.expansion_discount}",
        f"min seed score         {cfg.min_expansion_seed_score}",
        f"per-seed cap           {cfg.per_seed_expansion_cap}",
        f"min expansion score    {cfg.min_expansion_result_score}",
        f"gamedata floor         {cfg.gamedata_unintent_floor}",
    ]
    console.print(Panel("\n".join(lines), title="Hyve Knowledge configuration", border_style="cyan"))


@config_app.command("set-embedding")
def set_embedding(
    provider: str = typer.Argument(..., help="Embedding provider: ollama, voyage, hash"),
    code_model: Optional[str] = typer.Option(None, help="Model for the code corpus."),
    text_model: Optional[str] = typer.Option(None, help="Model for client, gamedata and docs."),
    url: Optional[str] = typer.Option(None, help="Ollama base URL."),
    api_key: Optional[str] = typer.Option(None, help="VoyageAI API key."),
):
    """Choose the embedding provider (and optionally its models).

    Rebuild indices afterwards: vectors from different models are not comparable.
    """
    provider = provider.lower().strip()
    if provider not in PROVIDERS:
        err_console.print(f"[red]Unknown provider '{provider}'. Choose from: {', '.join(PROVIDERS)}[/red]")
        raise typer.Exit(code=1)

    models = {}
    if provider == "ollama":
        models = {"ollama_code_model": code_model, "ollama_text_model": text_model, "ollama_url": url}
    elif provider == "voyage":
        models = {"voyage_code_model": code_model, "voyage_text_model": text_model, "voyage_api_key": api_key}

    if not config_manager.save_embedding_config(provider, **models):
        err_console.print("[red]Failed to save configuration![/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Embedding provider set to: {provider}[/green]")
    console.print("Rebuild indices after changing: hk build-index all")


if __name__ == "__main__":
    app()
