"""
Import a directory of images into a collection.

Usage:
    python scripts/import_images.py DIR --collection NAME [--finalize] [--seed N]
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from megallery.core.config import settings
from megallery.core.database import close_db, get_db_context, init_db
from megallery.core.exceptions import MegalleryException
from megallery.core.workers import WorkerPools
from megallery.repositories import CollectionRepository
from megallery.services import (
    CacheService,
    CollectionService,
    DerivativeService,
    ImageService,
    MaterializationCache,
    StorageService,
)
from megallery.services.feature_service import SUPPORTED_FORMATS

console = Console()

IMAGE_SUFFIXES = {f".{ext}" for ext in SUPPORTED_FORMATS.values()} | {".jpeg", ".tif"}


class ImageImporter:
    """Ingest image files into one collection."""

    def __init__(self, directory: Path, collection_name: str, finalize: bool = False, seed: int | None = None):
        self.directory = directory
        self.collection_name = collection_name
        self.finalize = finalize
        self.seed = seed
        self.stats = {"total": 0, "imported": 0, "rejected": 0}
        self.start_time = time.time()

        self.storage = StorageService(settings.storage_root)
        self.pools = WorkerPools(settings.max_workers, settings.embedding_workers)
        self.materialization = MaterializationCache(settings.derivative_cache_bytes, self.storage)
        self.derivatives = DerivativeService(self.materialization, self.pools, settings.thumbnail_quality)
        self.cache = CacheService(metadata_ttl=settings.metadata_cache_ttl_seconds)

    def collection_service(self, db) -> CollectionService:
        images = ImageService(db, self.storage, self.derivatives, self.pools, pregenerate=False)
        return CollectionService(db, images, self.materialization, self.cache, self.pools)

    def find_files(self) -> list[Path]:
        return sorted(
            path for path in self.directory.rglob("*")
            if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
        )

    async def run(self):
        files = self.find_files()
        self.stats["total"] = len(files)

        console.print(Panel.fit(
            "[bold cyan]Image Import[/bold cyan]\n"
            f"Source: {self.directory}\n"
            f"Collection: {self.collection_name}\n"
            f"Files: {len(files):,}\n"
            f"Finalize: {'yes' if self.finalize else 'no'}",
            border_style="cyan"
        ))

        await init_db()

        async with get_db_context() as db:
            collection = await CollectionRepository(db).get_by_name(self.collection_name)
            if collection is None:
                collection = await self.collection_service(db).create_collection(self.collection_name)
                console.print(f"[green]Created collection[/green] {collection.id}")
            collection_id = collection.id

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("[blue]{task.fields[speed]} img/s"),
            console=console
        ) as progress:
            task = progress.add_task("Importing...", total=len(files), speed="0.0")

            for path in files:
                try:
                    # One transaction per file so a rejected upload leaves nothing behind
                    async with get_db_context() as db:
                        await self.collection_service(db).add_image(
                            collection_id,
                            path.name,
                            path.read_bytes(),
                            {"source_path": str(path)}
                        )
                    self.stats["imported"] += 1
                except MegalleryException as e:
                    self.stats["rejected"] += 1
                    console.print(f"[red]✗[/red] {path.name[:40]}: {e.message}")

                elapsed = time.time() - self.start_time
                speed = (self.stats["imported"] + self.stats["rejected"]) / elapsed if elapsed > 0 else 0
                progress.update(task, advance=1, speed=f"{speed:.1f}", description=f"Importing: {path.name[:40]}")

        if self.finalize:
            await self.run_finalize(collection_id)

        self.display_summary()

    async def run_finalize(self, collection_id):
        console.print("\n[bold]Computing layout...[/bold]")
        try:
            async with get_db_context() as db:
                embedding = await self.collection_service(db).finalize(
                    collection_id, force_recompute=True, seed=self.seed
                )
            console.print(
                f"[green]✓[/green] Generation {embedding.generation}: "
                f"{len(embedding.coordinates):,} placed, {len(embedding.excluded):,} excluded"
            )
        except MegalleryException as e:
            console.print(f"[red]✗ Finalize failed:[/red] {e.message}")

    def display_summary(self):
        elapsed = time.time() - self.start_time

        table = Table(title="\n[bold]Import Summary[/bold]")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right", style="green")

        table.add_row("Files found", f"{self.stats['total']:,}")
        table.add_row("Imported", f"{self.stats['imported']:,}")
        table.add_row("Rejected", f"{self.stats['rejected']:,}", style="red" if self.stats["rejected"] else None)
        table.add_row("Elapsed", f"{elapsed:.1f}s")

        console.print(table)

    async def close(self):
        self.pools.shutdown()
        await self.cache.redis.disconnect()
        await close_db()


async def main():
    parser = argparse.ArgumentParser(description="Import a directory of images into a collection")
    parser.add_argument("directory", type=Path, help="Directory to scan recursively")
    parser.add_argument("--collection", required=True, help="Collection name (created if missing)")
    parser.add_argument("--finalize", action="store_true", help="Compute a new layout generation afterwards")
    parser.add_argument("--seed", type=int, default=None, help="Seed of the layout run")
    args = parser.parse_args()

    if not args.directory.is_dir():
        console.print(f"[red]Not a directory:[/red] {args.directory}")
        sys.exit(1)

    settings.ensure_directories_exist()
    importer = ImageImporter(args.directory, args.collection, args.finalize, args.seed)
    try:
        await importer.run()
    finally:
        await importer.close()


if __name__ == "__main__":
    asyncio.run(main())
