import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from cearch import config
from cearch.embed import Embedder
from cearch.engine import build_index, clear, query
from cearch.errors import CearchError, NotFound
from cearch.files import find_git_root
from cearch.store import IndexStore

logger = logging.getLogger(__name__)


def setup_logging() -> str:
    """Configure file logging. Returns the log file path."""
    log_dir = Path("log")
    log_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_dir / f"cearch-{timestamp}.log"
    logging.basicConfig(
        filename=str(log_file),
        level=logging.DEBUG,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    return str(log_file)


def resolve_repo_root(path: str | None) -> Path:
    """Return the repository root for *path* (default: current directory).

    Uses the enclosing git root when there is one.
    """
    start = Path(path) if path else Path.cwd()
    if path and not start.exists():
        raise CearchError(f"No such directory: {path}")
    return find_git_root(start) or start.resolve()


def _cmd_index(args: argparse.Namespace) -> int:
    root = resolve_repo_root(args.path)
    if args.force:
        logger.info("--force given; every index run is a full rebuild")
    embedder = Embedder.load()
    print(f"Indexing {root} ...")
    stats = asyncio.run(build_index(root, embedder))
    for path, error in stats.parse_errors:
        print(f"  skipped {path}: {error}", file=sys.stderr)
    print(
        f"Indexed {stats.units_indexed} units from {stats.files_indexed} files "
        f"({stats.files_skipped} skipped, {len(stats.parse_errors)} parse errors) "
        f"in {stats.duration}s"
    )
    return 0


def _cmd_query(args: argparse.Namespace) -> int:
    root = resolve_repo_root(args.path)
    # Fail before the model is (re)downloaded
    store = IndexStore.for_repo(root)
    if not store.exists():
        raise NotFound(f"No index found at {store.path}")
    embedder = Embedder.load()
    results = asyncio.run(
        query(args.query, args.num_results, repo_root=root, embedder=embedder)
    )
    if not results:
        print("No results.")
        return 0
    for rank, result in enumerate(results, 1):
        unit = result.unit
        print(
            f"{rank:>2}. {unit.location}-{unit.end_line}  {unit.kind.value} "
            f"{unit.name}  (distance {result.distance:.4f})"
        )
        if args.show:
            for line in unit.code.splitlines():
                print(f"      {line}")
    return 0


def _cmd_clean(args: argparse.Namespace) -> int:
    root = resolve_repo_root(args.path)
    removed = clear(root, keep_models=args.keep_models)
    print("Index removed." if removed else "Nothing to clean.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cearch", description="cearch – codebase semantic search toolkit"
    )
    parser.add_argument(
        "--log",
        action="store_true",
        help="Enable logging to log/cearch-{datetime}.log",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser(
        "index", help="Index a repository into embeddings and a vector index"
    )
    p_index.add_argument(
        "path", nargs="?", default=None, help="Repository to index (default: cwd)"
    )
    p_index.add_argument(
        "--force", action="store_true", help="Force re-indexing (always a full rebuild)"
    )
    p_index.set_defaults(func=_cmd_index)

    p_query = sub.add_parser(
        "query", help="Query the index with a code snippet or description"
    )
    p_query.add_argument("query", help="The query string")
    p_query.add_argument(
        "-n",
        "--num-results",
        type=int,
        default=config.NUM_RESULTS,
        help="Number of results to return",
    )
    p_query.add_argument(
        "--path", default=None, help="Repository to search (default: cwd)"
    )
    p_query.add_argument(
        "--show", action="store_true", help="Print the source of each result"
    )
    p_query.set_defaults(func=_cmd_query)

    p_clean = sub.add_parser(
        "clean", help="Clean the index and embeddings for a repository"
    )
    p_clean.add_argument(
        "path", nargs="?", default=None, help="Repository to clean (default: cwd)"
    )
    p_clean.add_argument(
        "--keep-models",
        action="store_true",
        help="Keep the downloaded embedding models",
    )
    p_clean.set_defaults(func=_cmd_clean)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.log:
        log_file = setup_logging()
        print(f"Logging to: {log_file}")

    try:
        return args.func(args)
    except CearchError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
