"""
stannot: Spatial Transcriptomics ANNOTation
空間トランスクリプトームデータの読み込み・外部アノテーション統合・可視化
"""

from .readers import (
    read_10x_mex,
    read_visium,
    read_xenium,
    read_triplets,
    scale_coordinates
)
from .annotation import (
    load_annotation_table,
    check_dimensions,
    reconcile,
    reconcile_clusters,
    reconcile_cell_types,
    attach_deconvolution,
    ReconciliationError,
    KeyDomainError,
    OrderMismatchError,
    EmptyIntersectionError
)
from .preprocessing import (
    qc_filter,
    preprocess_data,
    compute_embeddings,
    calculate_spatial_statistics
)
from .palette import generate_palette, set_palette
from .visualization import (
    plot_spatial,
    plot_umap,
    plot_deconvolution,
    plot_composition
)
from .workflow import spot_workflow, cell_workflow
from .utils import get_rng

__version__ = "1.0.0"
__author__ = "stannot Development Team"

__all__ = [
    "read_10x_mex",
    "read_visium",
    "read_xenium",
    "read_triplets",
    "scale_coordinates",
    "load_annotation_table",
    "check_dimensions",
    "reconcile",
    "reconcile_clusters",
    "reconcile_cell_types",
    "attach_deconvolution",
    "ReconciliationError",
    "KeyDomainError",
    "OrderMismatchError",
    "EmptyIntersectionError",
    "qc_filter",
    "preprocess_data",
    "compute_embeddings",
    "calculate_spatial_statistics",
    "generate_palette",
    "set_palette",
    "plot_spatial",
    "plot_umap",
    "plot_deconvolution",
    "plot_composition",
    "spot_workflow",
    "cell_workflow",
    "get_rng",
]
