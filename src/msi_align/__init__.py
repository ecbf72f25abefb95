"""
msi_align: peak alignment of DESI-MSI pixel spectra into a pixels x m/z matrix.
"""

from .config import AlignConfig, load_config
from .dataset import Dataset, PixelSpectrum, scan_dataset
from .clustering import ClusterResult, bin_masses, cluster_masses
from .matrix import AlignedMatrix
from .filters import apply_filters
from .merge import CompiledMatrix, compile_runs, merge_matrices
from .normalize import normalize_matrix
from .pipeline import AlignmentResult, align_dataset, align_spectra, run_alignment

__version__ = "0.1.0"

__all__ = [
    "AlignConfig",
    "load_config",
    "Dataset",
    "PixelSpectrum",
    "scan_dataset",
    "ClusterResult",
    "cluster_masses",
    "bin_masses",
    "AlignedMatrix",
    "apply_filters",
    "CompiledMatrix",
    "merge_matrices",
    "compile_runs",
    "normalize_matrix",
    "AlignmentResult",
    "align_spectra",
    "align_dataset",
    "run_alignment",
    "__version__",
]
