"""
Rich terminal display for pipesplit.

Renders the run header, the partition plan, per-epoch metrics,
comparison tables and failure reports using the `rich` library.
"""

import math

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

console = Console(width=max(80, Console().width))

# ─── Color Palette ───────────────────────────────────────────────────────────

COLORS = {
    "forward": "bright_cyan",
    "idle": "bright_black",
    "success": "bold bright_green",
    "loss": "bright_red",
}

MODE_DISPLAY_NAMES = {
    "split": "Split (Pipeline-Parallel)",
    "single": "Single Process (Reference)",
}

RULE = "━" * 48


def _fmt(value, fmt: str = ".6f", missing: str = "—") -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return missing
    return format(value, fmt)


# ─── Header ──────────────────────────────────────────────────────────────────

def print_header(config, device_str: str = "CPU"):
    """Print the pipesplit header banner."""
    mode = f"{config.num_stages} pipeline stages" if config.split else "single process"
    console.print()
    console.print(
        f"  [bold bright_cyan]🔧 pipesplit[/] [dim]— Lock-step Pipeline-Parallel Training[/]"
    )
    console.print(
        f"  [dim]   Model: {config.num_layers}-layer MLP ({config.input_dim}→{config.hidden_dim}→"
        f"{config.num_classes}) │ {mode} │ M={config.accumulation_steps} │ {device_str}[/]"
    )
    console.print()


# ─── Partition Plan ──────────────────────────────────────────────────────────

def print_partition(sizes: list[int]):
    """Print which global layers each rank owns, as a bar per rank."""
    console.print(f"  [dim]── Partition ({sum(sizes)} layers → {len(sizes)} ranks) ──────────────────────[/]")
    start = 0
    for rank, size in enumerate(sizes):
        bar = Text()
        bar.append("░░" * start, style=COLORS["idle"])
        bar.append("██" * size, style=COLORS["forward"])
        bar.append("░░" * (sum(sizes) - start - size), style=COLORS["idle"])
        label = f"  [bold white]\\[Rank {rank}][/] "
        console.print(label, bar, f" [dim]layers {start}–{start + size - 1}[/]", sep="")
        start += size
    console.print()


# ─── Run Output ──────────────────────────────────────────────────────────────

def print_mode_header(mode: str):
    """Print a mode section header."""
    console.print(f"  [bold bright_yellow]{RULE}[/]")
    console.print(f"  [bold bright_white] Mode: {MODE_DISPLAY_NAMES[mode]}[/]")
    console.print(f"  [bold bright_yellow]{RULE}[/]")
    console.print()


def print_epoch(stats):
    """Print one epoch's metrics."""
    console.print(
        f"  [dim]Epoch {stats.epoch:03d}[/] │ updates {stats.updates:4d} │ "
        f"train loss [{COLORS['loss']}]{_fmt(stats.train_loss)}[/] │ "
        f"test loss [{COLORS['loss']}]{_fmt(stats.test_loss)}[/] │ "
        f"test acc [{COLORS['success']}]{_fmt(stats.test_accuracy, '.2%')}[/]"
    )


def print_run_stats(result: dict):
    """Print stats for a single run."""
    console.print()
    console.print(
        f"  ⏱  Time: [bold]{result.get('wall_time', 0):.2f}s[/] │ "
        f"Idle: [{COLORS['loss']}]{result.get('idle_pct', 0):.1f}%[/] │ "
        f"Final Loss: [{COLORS['loss']}]{_fmt(result.get('final_loss'))}[/] │ "
        f"Test Acc: [{COLORS['success']}]{_fmt(result.get('test_accuracy'), '.2%')}[/]"
    )
    if result.get("skipped"):
        console.print(f"  [bright_yellow]⚠[/] skipped {result['skipped']} non-finite micro-batches")
    console.print()


# ─── Comparison Table ────────────────────────────────────────────────────────

def print_comparison_progress(mode: str, status: str = "running"):
    """Print progress line during comparison mode."""
    display_name = MODE_DISPLAY_NAMES[mode]
    if status == "done":
        console.print(f"  [bright_green]✓[/] {display_name} [dim]... done[/]")
    else:
        console.print(f"  [bright_yellow]⏳[/] Running {display_name}...")


def print_comparison_table(results: list[dict]):
    """Print split and single-process results side by side."""
    console.print()
    console.print(f"  [bold bright_yellow]{RULE}[/]")
    console.print(f"  [bold bright_white] 📊 Results[/]")
    console.print(f"  [bold bright_yellow]{RULE}[/]")
    console.print()

    table = Table(
        box=box.SIMPLE_HEAVY,
        show_header=True,
        header_style="bold bright_white",
        padding=(0, 2),
        pad_edge=True,
    )

    table.add_column("Mode", style="bold bright_cyan", no_wrap=True)
    table.add_column("Partition", justify="right", no_wrap=True)
    table.add_column("Updates", justify="right", no_wrap=True)
    table.add_column("Time", justify="right", no_wrap=True)
    table.add_column("Final Loss", justify="right", no_wrap=True)
    table.add_column("Test Acc", justify="right", no_wrap=True)

    for r in results:
        table.add_row(
            MODE_DISPLAY_NAMES.get(r["mode"], r["mode"]),
            "/".join(str(s) for s in r.get("partition", [])),
            str(r.get("updates", 0)),
            f"{r.get('wall_time', 0):.2f}s",
            _fmt(r.get("final_loss")),
            _fmt(r.get("test_accuracy"), ".2%"),
        )

    console.print(table)
    console.print()

    # Modes take different numbers of updates; flag gaps above 10 points
    accs = [r.get("test_accuracy") for r in results]
    if len(accs) >= 2 and None not in accs:
        gap = abs(accs[0] - accs[1])
        if gap > 0.10:
            console.print(f"  [bright_yellow]⚠[/] Test accuracy differs by {gap:.1%} between modes.")
        else:
            console.print(f"  [bold bright_green]✓[/] Both modes reach comparable accuracy.")
        console.print()


# ─── Failure ─────────────────────────────────────────────────────────────────

def print_failure(error: Exception):
    """Print which rank and phase aborted the run."""
    rank = getattr(error, "rank", None)
    phase = getattr(error, "phase", None)
    body = Text()
    body.append(f"{type(error).__name__}\n", style="bold red")
    body.append(f"rank:  {'—' if rank is None else rank}\n")
    body.append(f"phase: {phase or '—'}\n")
    body.append(getattr(error, "message", str(error)))
    console.print(Panel(body, title="Run aborted", border_style="red", expand=False))
