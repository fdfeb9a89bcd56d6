from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("runner_fleet.charts")

CHARTS_DIRNAME = "charts"

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

SERIES_COLORS = {
    "cpu": "#2E86AB",
    "memory": "#A23B72",
    "load": "#F18F01",
    "rx": "#6A994E",
    "tx": "#C73E1D",
}


def render_session_charts(directory: Path) -> list[Path]:
    """Render every chart whose input exists in ``directory``; returns the written paths."""
    output_dir = directory / CHARTS_DIRNAME
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    usage = _load_series(directory / "resource_usage.log")
    if usage is not None:
        for render in (_render_cpu_chart, _render_memory_chart, _render_load_chart, _render_network_chart):
            path = render(usage, output_dir)
            if path is not None:
                written.append(path)

    cores = _load_series(directory / "cpu_cores.log")
    if cores is not None:
        path = _render_core_heatmap(cores, output_dir)
        if path is not None:
            written.append(path)

    LOGGER.info("Charts generated in %s (%d file(s))", output_dir, len(written))
    return written


def _load_series(path: Path) -> pd.DataFrame | None:
    """Read a metric log and add ``elapsed`` seconds from the first sample."""
    if not path.is_file():
        LOGGER.warning("%s not found; skipping its charts", path.name)
        return None
    try:
        df = pd.read_csv(path)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        LOGGER.warning("Could not read %s: %s", path.name, exc)
        return None
    if df.empty or "timestamp" not in df.columns:
        LOGGER.warning("%s holds no samples; skipping its charts", path.name)
        return None
    df = df.apply(pd.to_numeric, errors="coerce").dropna(subset=["timestamp"])
    if df.empty:
        return None
    df["elapsed"] = df["timestamp"] - df["timestamp"].iloc[0]
    return df


def _render_line(
    df: pd.DataFrame,
    columns: dict[str, tuple[str, str]],
    title: str,
    ylabel: str,
    chart_path: Path,
    scale: float = 1.0,
) -> Path | None:
    present = {column: spec for column, spec in columns.items() if column in df.columns}
    if not present:
        LOGGER.warning("No data available for %s", chart_path.name)
        return None

    fig, ax = plt.subplots(figsize=(10, 5))
    for column, (label, color) in present.items():
        ax.plot(df["elapsed"], df[column] / scale, label=label, color=color, linewidth=2)
    ax.set_xlabel("Time (seconds from start)", fontweight="semibold")
    ax.set_ylabel(ylabel, fontweight="semibold")
    ax.set_title(title, fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    if len(present) > 1:
        ax.legend(loc="upper right", frameon=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def _render_cpu_chart(df: pd.DataFrame, output_dir: Path) -> Path | None:
    return _render_line(
        df,
        {"cpu_percent": ("CPU", SERIES_COLORS["cpu"])},
        "CPU Usage Over Time",
        "CPU Usage (%)",
        output_dir / "cpu_usage.png",
    )


def _render_memory_chart(df: pd.DataFrame, output_dir: Path) -> Path | None:
    return _render_line(
        df,
        {"memory_kb": ("Memory", SERIES_COLORS["memory"])},
        "Memory Usage Over Time",
        "Memory Usage (MB)",
        output_dir / "memory_usage.png",
        scale=1024.0,
    )


def _render_load_chart(df: pd.DataFrame, output_dir: Path) -> Path | None:
    return _render_line(
        df,
        {"load_avg": ("1-minute load", SERIES_COLORS["load"])},
        "System Load Average",
        "Load Average",
        output_dir / "load_average.png",
    )


def _render_network_chart(df: pd.DataFrame, output_dir: Path) -> Path | None:
    return _render_line(
        df,
        {
            "network_rx_bytes": ("Received", SERIES_COLORS["rx"]),
            "network_tx_bytes": ("Transmitted", SERIES_COLORS["tx"]),
        },
        "Network Traffic",
        "Bytes per interval",
        output_dir / "network_traffic.png",
    )


def _render_core_heatmap(df: pd.DataFrame, output_dir: Path) -> Path | None:
    core_columns = [column for column in df.columns if column.startswith("core")]
    if not core_columns:
        LOGGER.warning("No per-core columns available for the heatmap")
        return None
    chart_path = output_dir / "cpu_cores_heatmap.png"

    grid = np.nan_to_num(df[core_columns].to_numpy(dtype=float).T)
    fig, ax = plt.subplots(figsize=(12, max(3, len(core_columns) * 0.4)))
    sns.heatmap(
        grid,
        vmin=0,
        vmax=100,
        cmap="RdYlGn_r",
        yticklabels=core_columns,
        xticklabels=False,
        cbar_kws={"label": "Usage %"},
        ax=ax,
    )
    ax.set_xlabel("Time (samples from start)", fontweight="semibold")
    ax.set_ylabel("CPU Core", fontweight="semibold")
    ax.set_title("CPU Cores Usage Heatmap", fontweight="bold", pad=15)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


__all__ = ["CHARTS_DIRNAME", "render_session_charts"]
