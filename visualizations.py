"""
Interactive visualizations for differential expression results using Plotly.

Provides volcano, MA, PCA, sample distance and dispersion plots.
"""

from typing import Dict, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from dispersion import DispersionEstimate
from results import ensure_gene_column
from transforms import top_variable_genes

SIGNIFICANCE_COLORS = {"Up": "red", "Down": "blue", "NS": "lightgray"}


def _require_columns(df: pd.DataFrame, required, plot_name: str) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        available = ", ".join(df.columns.tolist()[:5])
        extra = f"... ({len(df.columns) - 5} more)" if len(df.columns) > 5 else ""
        raise ValueError(
            f"Cannot create {plot_name}: missing required columns {missing}. "
            f"Found columns: {available}{extra}."
        )


def _classify(df: pd.DataFrame, lfc_column: str, padj_threshold: float, lfc_threshold: float) -> pd.Series:
    significant = (df["padj"] < padj_threshold).fillna(False)
    up = significant & (df[lfc_column] > lfc_threshold)
    down = significant & (df[lfc_column] < -lfc_threshold)
    return pd.Series(np.select([up, down], ["Up", "Down"], default="NS"), index=df.index)


def create_volcano_plot(
    results_df: pd.DataFrame,
    lfc_threshold: float = 1.0,
    padj_threshold: float = 0.05,
    top_n_labels: int = 10,
    lfc_column: str = "log2FoldChange",
) -> go.Figure:
    """
    Create interactive volcano plot from DE results.

    Genes without an adjusted p-value (all-zero, filtered or outlier genes)
    are not drawn.

    Args:
        results_df: DataFrame with columns: gene, padj and ``lfc_column``
        lfc_threshold: Log2 fold change threshold for significance (default: 1.0)
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        top_n_labels: Number of most significant genes to label
        lfc_column: "log2FoldChange" or "log2FoldChangeShrunk"

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError(
            "Cannot create volcano plot: results_df is empty or None. "
            "Ensure your differential expression analysis produced results."
        )

    results_df = ensure_gene_column(results_df)
    _require_columns(results_df, ["gene", lfc_column, "padj"], "volcano plot")

    df = results_df.dropna(subset=["padj", lfc_column]).copy()
    if df.empty:
        raise ValueError(
            "Cannot create volcano plot: all padj values are NaN. "
            "Ensure differential expression analysis completed successfully."
        )

    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))  # Clip to avoid inf
    df["significance"] = _classify(df, lfc_column, padj_threshold, lfc_threshold)

    fig = px.scatter(
        df,
        x=lfc_column,
        y="-log10_padj",
        color="significance",
        hover_name="gene",
        hover_data={
            lfc_column: ":.2f",
            "padj": ":.2e",
            "-log10_padj": False,
            "significance": False,
        },
        color_discrete_map=SIGNIFICANCE_COLORS,
        labels={lfc_column: "log₂(Fold Change)", "-log10_padj": "-log₁₀(padj)"},
    )

    # Add threshold lines
    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = df[df["padj"] < padj_threshold].nsmallest(top_n_labels, "padj")
        if not top_genes.empty:
            fig.add_trace(
                go.Scatter(
                    x=top_genes[lfc_column],
                    y=top_genes["-log10_padj"],
                    mode="text",
                    text=top_genes["gene"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title="Volcano Plot", showlegend=True)

    return fig


def create_ma_plot(
    results_df: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
    lfc_column: str = "log2FoldChange",
) -> go.Figure:
    """
    Create MA plot (log mean expression vs log2 fold change).

    Genes with a fold change but no adjusted p-value are drawn as "NS".

    Args:
        results_df: DataFrame with columns: gene, baseMean, padj and ``lfc_column``
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        lfc_threshold: Log2 fold change threshold (default: 1.0)
        lfc_column: "log2FoldChange" or "log2FoldChangeShrunk"

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError("Cannot create MA plot: results_df is empty or None.")

    results_df = ensure_gene_column(results_df)
    _require_columns(results_df, ["gene", lfc_column, "padj", "baseMean"], "MA plot")

    df = results_df.dropna(subset=[lfc_column, "baseMean"]).copy()
    df = df[df["baseMean"] > 0]
    if df.empty:
        raise ValueError("Cannot create MA plot: no valid data after removing NaN values.")

    df["log10_baseMean"] = np.log10(df["baseMean"] + 1)
    df["significance"] = _classify(df, lfc_column, padj_threshold, lfc_threshold)

    fig = px.scatter(
        df,
        x="log10_baseMean",
        y=lfc_column,
        color="significance",
        hover_name="gene",
        hover_data={
            lfc_column: ":.2f",
            "padj": ":.2e",
            "log10_baseMean": False,
            "significance": False,
        },
        color_discrete_map=SIGNIFICANCE_COLORS,
        labels={
            "log10_baseMean": "log₁₀(baseMean + 1)",
            lfc_column: "log₂(Fold Change)",
        },
    )

    fig.add_hline(y=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_hline(y=-lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_hline(y=0, line_color="black", line_width=0.5)

    fig.update_layout(title="MA Plot", showlegend=True)

    return fig


def create_pca_plot(
    transformed_df: pd.DataFrame,
    sample_conditions: Dict[str, str],
    n_top_genes: int = 500,
    show_ellipses: bool = True,
) -> go.Figure:
    """
    Create PCA plot of samples from the most variable genes.

    Args:
        transformed_df: genes × samples on a log-like scale (VST or log2 normalized)
        sample_conditions: Dict[sample_name, condition]
        n_top_genes: Number of highest-variance genes used (default: 500)
        show_ellipses: Draw 95% ellipses for groups of 3 or more samples

    Returns:
        Plotly Figure object
    """
    if transformed_df is None or transformed_df.empty:
        raise ValueError(
            "Cannot create PCA plot: transformed_df is empty or None. "
            "Ensure your expression data contains samples and genes."
        )

    if transformed_df.shape[1] < 2:
        raise ValueError(
            f"Cannot create PCA plot: requires at least 2 samples, but got {transformed_df.shape[1]}."
        )

    if not sample_conditions:
        raise ValueError(
            "Cannot create PCA plot: sample_conditions is empty. "
            "Provide a mapping of sample names to experimental conditions for coloring."
        )

    # samples × top genes
    selected = top_variable_genes(transformed_df, n_top_genes).T
    pca = PCA(n_components=min(2, *selected.shape))
    pca_result = pca.fit_transform(selected.values)
    if pca_result.shape[1] < 2:
        pca_result = np.column_stack([pca_result, np.zeros(len(pca_result))])
    explained = np.append(pca.explained_variance_ratio_, [0.0, 0.0])[:2]

    pca_df = pd.DataFrame(pca_result[:, :2], columns=["PC1", "PC2"], index=selected.index)
    pca_df["condition"] = [sample_conditions.get(s, "Unknown") for s in pca_df.index]
    pca_df["sample"] = pca_df.index

    fig = px.scatter(
        pca_df,
        x="PC1",
        y="PC2",
        color="condition",
        hover_name="sample",
        labels={
            "PC1": f"PC1 ({explained[0] * 100:.1f}%)",
            "PC2": f"PC2 ({explained[1] * 100:.1f}%)",
        },
    )

    if show_ellipses:
        colors = px.colors.qualitative.Plotly
        for i, cond in enumerate(sorted(pca_df["condition"].unique())):
            group = pca_df[pca_df["condition"] == cond]
            if len(group) < 3:
                continue
            cov = np.cov(group["PC1"].values, group["PC2"].values)
            eigenvalues, eigenvectors = np.linalg.eigh(cov)
            # 95% confidence: chi2(df=2) = 5.991
            transform = eigenvectors @ np.diag(np.sqrt(np.maximum(eigenvalues, 0) * 5.991))
            theta = np.linspace(0, 2 * np.pi, 100)
            ellipse_pts = (transform @ np.array([np.cos(theta), np.sin(theta)])).T
            ellipse_pts += np.array([group["PC1"].mean(), group["PC2"].mean()])
            fig.add_trace(
                go.Scatter(
                    x=ellipse_pts[:, 0],
                    y=ellipse_pts[:, 1],
                    mode="lines",
                    line=dict(color=colors[i % len(colors)], dash="dash", width=1.5),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title=f"PCA Plot (top {selected.shape[1]} genes)", showlegend=True)

    return fig


def compute_sample_distances(transformed_df: pd.DataFrame) -> pd.DataFrame:
    """Euclidean distances between samples (columns), ordered by hierarchical clustering."""
    values = transformed_df.T.values
    condensed = pdist(values, metric="euclidean")
    order = leaves_list(linkage(condensed, method="complete")) if len(values) > 1 else [0]
    samples = transformed_df.columns[order]
    distances = pd.DataFrame(
        squareform(condensed), index=transformed_df.columns, columns=transformed_df.columns
    )
    return distances.loc[samples, samples]


def create_sample_distance_heatmap(
    transformed_df: pd.DataFrame, sample_conditions: Optional[Dict[str, str]] = None
) -> go.Figure:
    """
    Create sample-to-sample distance heatmap in clustering order.

    Args:
        transformed_df: genes × samples on a log-like scale (VST or log2 normalized)
        sample_conditions: Optional Dict mapping sample names to conditions,
            appended to the axis labels

    Returns:
        Plotly Figure object
    """
    if transformed_df is None or transformed_df.empty:
        raise ValueError("Cannot create sample distance heatmap: transformed_df is empty or None.")

    distances = compute_sample_distances(transformed_df)
    labels = [
        f"{s} ({sample_conditions[s]})" if sample_conditions and s in sample_conditions else str(s)
        for s in distances.index
    ]

    fig = go.Figure(
        data=go.Heatmap(
            z=distances.values,
            x=labels,
            y=labels,
            colorscale="Blues_r",
            hovertemplate="Sample X: %{x}<br>Sample Y: %{y}<br>Distance: %{z:.2f}<extra></extra>",
        )
    )

    fig.update_layout(title="Sample Distances", width=600, height=600)

    return fig


def create_dispersion_plot(dispersions: DispersionEstimate) -> go.Figure:
    """
    Plot gene-wise and final dispersions against mean normalized count with the fitted trend.

    Dispersion outliers are highlighted.
    """
    base_mean = np.asarray(dispersions.base_mean)
    shown = base_mean > 0
    if not shown.any():
        raise ValueError("Cannot create dispersion plot: every gene has zero counts.")

    order = np.argsort(base_mean[shown])
    means = base_mean[shown]
    genewise = np.asarray(dispersions.genewise)[shown]
    final = np.asarray(dispersions.final)[shown]
    outlier = np.asarray(dispersions.outlier)[shown]

    fig = go.Figure()
    fig.add_trace(
        go.Scattergl(
            x=means, y=genewise, mode="markers", name="gene-wise",
            marker=dict(color="black", size=3, opacity=0.4),
        )
    )
    fig.add_trace(
        go.Scattergl(
            x=means[~outlier], y=final[~outlier], mode="markers", name="final",
            marker=dict(color="dodgerblue", size=3, opacity=0.6),
        )
    )
    if outlier.any():
        fig.add_trace(
            go.Scattergl(
                x=means[outlier], y=final[outlier], mode="markers", name="outlier",
                marker=dict(color="dodgerblue", size=7, symbol="circle-open"),
            )
        )
    fig.add_trace(
        go.Scatter(
            x=means[order], y=np.asarray(dispersions.trend_values)[shown][order],
            mode="lines", name=f"trend ({dispersions.trend.kind})", line=dict(color="red", width=2),
        )
    )

    fig.update_xaxes(type="log", title="mean of normalized counts")
    fig.update_yaxes(type="log", title="dispersion")
    fig.update_layout(title="Dispersion Estimates", showlegend=True)

    return fig


def compute_de_summary(
    results_df: pd.DataFrame, padj_threshold: float = 0.05, lfc_threshold: float = 1.0
) -> dict:
    """
    Compute summary statistics from DE results.

    Args:
        results_df: DataFrame with columns: gene, log2FoldChange, padj
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        lfc_threshold: Log2 fold change threshold (default: 1.0)

    Returns:
        Dict with tested_genes, significant_genes, upregulated, downregulated,
        top_up_genes, top_down_genes, top_significant
    """
    if results_df is None or results_df.empty:
        raise ValueError("Cannot compute DE summary: results_df is empty or None.")

    results_df = ensure_gene_column(results_df)
    df = results_df.dropna(subset=["padj", "log2FoldChange"]).copy()

    sig = df[df["padj"] < padj_threshold]
    up = sig[sig["log2FoldChange"] > lfc_threshold]
    down = sig[sig["log2FoldChange"] < -lfc_threshold]

    def as_tuples(frame: pd.DataFrame) -> list:
        return list(zip(frame["gene"], frame["log2FoldChange"], frame["padj"]))

    return {
        "tested_genes": len(df),
        "significant_genes": len(sig),
        "upregulated": len(up),
        "downregulated": len(down),
        "top_up_genes": as_tuples(up.nlargest(10, "log2FoldChange")),
        "top_down_genes": as_tuples(down.nsmallest(10, "log2FoldChange")),
        "top_significant": as_tuples(sig.nsmallest(10, "padj")),
    }
