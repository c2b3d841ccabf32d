"""
Interactive Plotly figures for the expression report.

Usage:
    from dengue_gex.plots import ReportPlotter

    plotter = ReportPlotter()
    fig = plotter.pca_scatter(pca_result, sample_metadata)
    html = plotter.to_html(fig, "pca")
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd
import plotly.figure_factory as ff
import plotly.graph_objects as go
from plotly.subplots import make_subplots
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import pdist

from .clustering import ClusteringConfig, ClusteringResult
from .config import GROUP_ORDER
from .de_result import DirectionEnrichment, EnrichmentResult
from .pca import PCAResult

logger = logging.getLogger(__name__)

# Color schemes
COLORS = {
    # Disease-state groups
    "control": "#2ca02c",       # Green
    "DF": "#ff7f0e",            # Orange
    "DHF": "#d62728",           # Red
    "convalescent": "#1f77b4",  # Blue

    # Expression direction
    "up": "#e74c3c",
    "down": "#3498db",
    "neutral": "#b0b7bb",
}

FALLBACK_COLORS = ["#9467bd", "#8c564b", "#e377c2", "#7f7f7f", "#bcbd22", "#17becf"]


def group_color(group: str, position: int = 0) -> str:
    return COLORS.get(group, FALLBACK_COLORS[position % len(FALLBACK_COLORS)])


def _ordered_groups(groups: pd.Series) -> List[str]:
    present = list(dict.fromkeys(groups.dropna()))
    known = [g for g in GROUP_ORDER if g in present]
    return known + sorted(g for g in present if g not in known)


def _shorten(text: str, width: int = 50) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


class ReportPlotter:
    """Figure builders for each report section."""

    def __init__(self, template: str = "plotly_white"):
        """
        Initialize plotter.

        Args:
            template: Plotly template (plotly_white, simple_white, ggplot2, etc.)
        """
        self.template = template

    def sample_dendrogram(
        self,
        matrix: pd.DataFrame,
        sample_metadata: pd.DataFrame,
        config: Optional[ClusteringConfig] = None,
        title: str = "Hierarchical clustering of samples",
        height: int = 500,
    ) -> go.Figure:
        """
        Dendrogram of samples, leaves labeled with sample and disease state.

        Args:
            matrix: Gene x sample matrix used for clustering
            sample_metadata: Metadata with a disease_state column
            config: Distance metric and linkage method
        """
        config = config or ClusteringConfig()
        complete = matrix.dropna(axis=0, how="any")
        if complete.shape[1] < 2 or complete.empty:
            return self._empty_figure("Not enough samples to cluster")

        states = sample_metadata["disease_state"].reindex(complete.columns).fillna("")
        labels = [f"{s} ({state})" if state else s for s, state in zip(complete.columns, states)]

        fig = ff.create_dendrogram(
            complete.to_numpy(dtype=float).T,
            orientation="bottom",
            labels=labels,
            distfun=lambda x: pdist(x, metric=config.distance_metric),
            linkagefun=lambda d: linkage(d, method=config.linkage_method),
        )
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            template=self.template,
            height=height,
            yaxis_title=f"{config.distance_metric.title()} distance",
            xaxis=dict(tickangle=-90),
            showlegend=False,
        )
        return fig

    def gene_dendrogram(
        self,
        clustering: ClusteringResult,
        matrix: pd.DataFrame,
        config: Optional[ClusteringConfig] = None,
        title: str = "Clustering of high-variance genes",
        height: int = 450,
    ) -> go.Figure:
        """Dendrogram over the top-variance genes."""
        config = config or ClusteringConfig()
        genes = [g for g in clustering.gene_order if g in matrix.index]
        if len(genes) < 2:
            return self._empty_figure("Not enough genes to cluster")

        values = matrix.loc[genes].to_numpy(dtype=float)
        fig = ff.create_dendrogram(
            values,
            orientation="bottom",
            labels=genes,
            distfun=lambda x: pdist(x, metric=config.distance_metric),
            linkagefun=lambda d: linkage(d, method=config.linkage_method),
        )
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            template=self.template,
            height=height,
            xaxis=dict(tickangle=-90),
            showlegend=False,
        )
        return fig

    def clustered_heatmap(
        self,
        clustering: ClusteringResult,
        sample_metadata: pd.DataFrame,
        title: str = "Top-variance genes",
        height: int = 800,
    ) -> go.Figure:
        """Heatmap of the clustered, row-scaled top-variance genes."""
        heat = clustering.heatmap_matrix
        if heat.empty:
            return self._empty_figure("No genes to display")

        states = sample_metadata["disease_state"].reindex(heat.columns).fillna("")
        fig = go.Figure(go.Heatmap(
            z=heat.to_numpy(dtype=float),
            x=list(heat.columns),
            y=list(heat.index),
            customdata=np.tile(np.asarray(states, dtype=object), (len(heat), 1)),
            colorscale="RdBu_r",
            zmid=0,
            colorbar=dict(title="z-score"),
            hovertemplate="Gene: %{y}<br>Sample: %{x} (%{customdata})<br>z: %{z:.2f}<extra></extra>",
        ))
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            template=self.template,
            height=max(height, 14 * len(heat) + 200),
            xaxis=dict(tickangle=-90),
            yaxis=dict(autorange="reversed"),
        )
        return fig

    def pca_scatter(
        self,
        pca: PCAResult,
        sample_metadata: pd.DataFrame,
        x: str = "PC1",
        y: str = "PC2",
        title: str = "Principal components",
        height: int = 550,
    ) -> go.Figure:
        """Samples on two principal components, colored by disease state."""
        scores = pca.scores
        if y not in scores.columns:
            scores = scores.assign(**{y: 0.0})

        meta = sample_metadata.reindex(scores.index)
        fig = go.Figure()
        for i, group in enumerate(_ordered_groups(meta["group"])):
            members = meta.index[meta["group"] == group]
            label = meta.loc[members, "disease_state"].iloc[0]
            fig.add_trace(go.Scatter(
                x=scores.loc[members, x],
                y=scores.loc[members, y],
                mode="markers",
                name=f"{label} (n={len(members)})",
                text=list(members),
                marker=dict(size=11, color=group_color(group, i), line=dict(width=1, color="white")),
                hovertemplate="%{text}<br>" + x + ": %{x:.2f}<br>" + y + ": %{y:.2f}<extra></extra>",
            ))

        y_title = pca.axis_label(y) if y in pca.explained_variance_ratio.index else y
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            xaxis_title=pca.axis_label(x),
            yaxis_title=y_title,
            template=self.template,
            height=height,
            legend=dict(title="Disease state"),
        )
        return fig

    def explained_variance(self, pca: PCAResult, title: str = "Variance explained") -> go.Figure:
        """Per-component and cumulative explained variance."""
        ratio = pca.explained_variance_ratio * 100
        fig = go.Figure()
        fig.add_trace(go.Bar(
            x=list(ratio.index),
            y=ratio.values,
            name="Component",
            marker_color=COLORS["convalescent"],
            text=[f"{v:.1f}%" for v in ratio.values],
            textposition="outside",
        ))
        fig.add_trace(go.Scatter(
            x=list(ratio.index),
            y=np.cumsum(ratio.values),
            name="Cumulative",
            mode="lines+markers",
            line=dict(color=COLORS["neutral"], dash="dash"),
        ))
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            yaxis_title="% of variance",
            template=self.template,
            height=400,
        )
        return fig

    def volcano(
        self,
        table: pd.DataFrame,
        fdr_threshold: float = 0.05,
        log2fc_threshold: float = 1.0,
        label_top: int = 10,
        title: str = "Volcano plot",
        height: int = 600,
    ) -> go.Figure:
        """
        Volcano plot of a top table (log2FC vs -log10 p-value).

        Args:
            table: Top table indexed by gene with log2_fold_change, pvalue,
                pvalue_adjusted
            fdr_threshold: Adjusted p-value cutoff for highlighting
            log2fc_threshold: Fold-change cutoff for highlighting
            label_top: Number of most significant highlighted genes to label
        """
        data = table.dropna(subset=["log2_fold_change", "pvalue"])
        if data.empty:
            return self._empty_figure("No tested genes to display")

        neg_log_p = -np.log10(data["pvalue"].clip(lower=1e-300))
        significant = (data["pvalue_adjusted"] < fdr_threshold) & (
            data["log2_fold_change"].abs() >= log2fc_threshold
        )
        category = np.where(
            significant,
            np.where(data["log2_fold_change"] > 0, "up", "down"),
            "neutral",
        )

        fig = go.Figure()
        names = {"up": "Up", "down": "Down", "neutral": "Not significant"}
        for cat in ("neutral", "down", "up"):
            mask = category == cat
            if not mask.any():
                continue
            fig.add_trace(go.Scattergl(
                x=data["log2_fold_change"][mask],
                y=neg_log_p[mask],
                mode="markers",
                name=f"{names[cat]} ({int(mask.sum())})",
                text=list(data.index[mask]),
                marker=dict(color=COLORS[cat], size=5 if cat == "neutral" else 7, opacity=0.7),
                hovertemplate="%{text}<br>log2FC: %{x:.2f}<br>-log10 p: %{y:.2f}<extra></extra>",
            ))

        top = data[significant].head(label_top)
        for gene, row in top.iterrows():
            fig.add_annotation(
                x=row["log2_fold_change"],
                y=-np.log10(max(row["pvalue"], 1e-300)),
                text=str(gene),
                showarrow=True,
                arrowhead=0,
                ax=0,
                ay=-18,
                font=dict(size=10),
            )

        for xv in (-log2fc_threshold, log2fc_threshold):
            fig.add_vline(x=xv, line_dash="dash", line_color="gray", opacity=0.5)
        passing = data.loc[data["pvalue_adjusted"] < fdr_threshold, "pvalue"]
        if not passing.empty:
            fig.add_hline(
                y=-np.log10(max(passing.max(), 1e-300)),
                line_dash="dash", line_color="gray", opacity=0.5,
            )

        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            xaxis_title="log2 fold change",
            yaxis_title="-log10 p-value",
            template=self.template,
            height=height,
        )
        return fig

    def enrichment_dotplot(
        self,
        enrichment: EnrichmentResult,
        database: str,
        max_terms: int = 10,
        title: Optional[str] = None,
    ) -> go.Figure:
        """
        Dot plot of top terms for one database, activated and suppressed side by side.

        Dot position is the gene ratio, size the overlap and color the
        adjusted p-value.
        """
        panels = [enrichment.activated, enrichment.suppressed]
        if not any(d.terms_for(database) for d in panels):
            return self._empty_figure(f"No significant {database} terms")

        fig = make_subplots(
            rows=1, cols=2,
            subplot_titles=["Activated", "Suppressed"],
            horizontal_spacing=0.35,
        )
        all_terms = [t for d in panels for t in d.get_top_terms(max_terms, database=database)]
        neg_log = [-np.log10(max(t.pvalue_adjusted, 1e-300)) for t in all_terms]
        cmin, cmax = min(neg_log), max(neg_log)

        for col, direction in enumerate(panels, start=1):
            self._add_dot_trace(fig, direction, database, max_terms, col, cmin, cmax)

        n_rows = max(len(d.get_top_terms(max_terms, database=database)) for d in panels)
        fig.update_layout(
            title=dict(text=title or f"{database} enrichment", x=0.5, font=dict(size=18)),
            template=self.template,
            height=max(350, 32 * n_rows + 150),
            showlegend=False,
        )
        fig.update_xaxes(title_text="Gene ratio")
        return fig

    def _add_dot_trace(
        self,
        fig: go.Figure,
        direction: DirectionEnrichment,
        database: str,
        max_terms: int,
        col: int,
        cmin: float,
        cmax: float,
    ):
        terms = direction.get_top_terms(max_terms, database=database)
        if not terms:
            fig.add_annotation(
                text="No significant terms",
                xref=f"x{col} domain" if col > 1 else "x domain",
                yref=f"y{col} domain" if col > 1 else "y domain",
                x=0.5, y=0.5, showarrow=False, font=dict(color="gray"),
            )
            return
        terms = list(reversed(terms))  # most significant on top
        sizes = [t.intersection_size for t in terms]
        max_size = max(sizes) or 1
        fig.add_trace(
            go.Scatter(
                x=[t.precision for t in terms],
                y=[_shorten(t.term_name) for t in terms],
                mode="markers",
                text=[f"{t.term_id} ({t.representation})" for t in terms],
                customdata=sizes,
                marker=dict(
                    size=[8 + 22 * s / max_size for s in sizes],
                    color=[-np.log10(max(t.pvalue_adjusted, 1e-300)) for t in terms],
                    colorscale="Reds",
                    cmin=cmin,
                    cmax=cmax,
                    showscale=col == 1,
                    colorbar=dict(title="-log10 p.adj"),
                ),
                hovertemplate="%{text}<br>ratio: %{x:.3f}<br>genes: %{customdata}<extra></extra>",
            ),
            row=1, col=col,
        )

    def _empty_figure(self, message: str) -> go.Figure:
        """Create an empty figure with a message."""
        fig = go.Figure()
        fig.add_annotation(
            text=message,
            xref="paper", yref="paper",
            x=0.5, y=0.5,
            showarrow=False,
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            template=self.template,
            xaxis=dict(visible=False),
            yaxis=dict(visible=False),
            height=250,
        )
        return fig

    @staticmethod
    def to_html(fig: go.Figure, div_id: str) -> str:
        """Figure as an HTML fragment; plotly.js is loaded once by the page."""
        return fig.to_html(full_html=False, include_plotlyjs=False, div_id=div_id)
