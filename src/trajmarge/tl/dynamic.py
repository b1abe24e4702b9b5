"""Test every (gene, lineage) pair for dynamic expression along pseudotime.

Genes are dispatched to a process pool, one task per gene. A task carries
everything the worker needs (counts handle, pseudotime table, offset,
subject ids, configuration, backend and a spawned seed), so results are
identical for any number of workers.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import string
import tempfile
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
from pydantic import ValidationError
from scipy import sparse
from tqdm.auto import tqdm

from ..config import DynamicTestConfig, Settings, configure_logging
from ..exceptions import InputError, WorkerError
from .backend import FitFailure, FitResult, FitSuccess, ModelBackend, make_backend
from .basis import column_names
from .marge import MargeResult, marge
from .stats import TestResult, run_test
from .utils import coefficient_table, fitted_values, gene_dynamics, slope_data

logger = logging.getLogger(__name__)

STAT_TYPES = {"lrt": "LRT", "wald": "Wald", "score": "Score"}


class UnitState(Enum):
    """Progress of one (gene, lineage) unit."""

    PENDING = "pending"
    FITTING_ALT = "fitting_alt"
    FITTING_NULL = "fitting_null"
    TESTING = "testing"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class GeneLineageRecord:
    """Test outcome and model summaries for one gene on one lineage."""

    gene: str
    lineage: str
    test_stat: float
    test_stat_type: str
    test_stat_note: Optional[str]
    degrees_freedom: float
    p_value: float
    loglik_marge: float
    loglik_null: float
    dev_marge: float
    dev_null: float
    model_status: str
    marge_fit_notes: Optional[str]
    null_fit_notes: Optional[str]
    gene_time: float
    state: UnitState = UnitState.DONE
    marge_summary: Optional[pd.DataFrame] = None
    null_summary: Optional[pd.DataFrame] = None
    marge_preds: Optional[pd.DataFrame] = None
    null_preds: Optional[pd.DataFrame] = None
    marge_slope_data: Optional[pd.DataFrame] = None
    gene_dynamics: Optional[pd.DataFrame] = None

    def scalars(self) -> dict:
        """Scalar fields only (no tables), e.g. for building a results frame."""
        out = asdict(self)
        for key in (
            "marge_summary",
            "null_summary",
            "marge_preds",
            "null_preds",
            "marge_slope_data",
            "gene_dynamics",
        ):
            out.pop(key)
        out["state"] = self.state.value
        return out


def lineage_label(j: int) -> str:
    """``A``, ``B``, ... for lineage column ``j``."""
    return string.ascii_uppercase[j]


def failed_record(
    gene: str,
    lineage: str,
    stat_type: str,
    status: str,
    gene_time: float = np.nan,
) -> GeneLineageRecord:
    """All-``nan`` record for a unit that could not be processed."""
    return GeneLineageRecord(
        gene=gene,
        lineage=lineage,
        test_stat=np.nan,
        test_stat_type=stat_type,
        test_stat_note=None,
        degrees_freedom=np.nan,
        p_value=np.nan,
        loglik_marge=np.nan,
        loglik_null=np.nan,
        dev_marge=np.nan,
        dev_null=np.nan,
        model_status=status,
        marge_fit_notes=None,
        null_fit_notes=None,
        gene_time=gene_time,
        state=UnitState.ERROR,
    )


# ======================
# Shared counts arena
# ======================


@dataclass(frozen=True)
class ArenaHandle:
    """Picklable reference to the on-disk counts matrix (genes x cells)."""

    path: str
    shape: Tuple[int, int]
    dtype: str = "float64"

    def row(self, i: int) -> np.ndarray:
        mm = np.memmap(self.path, dtype=self.dtype, mode="r", shape=self.shape)
        out = np.array(mm[i])
        del mm
        return out


class CountsArena:
    """Write the counts to a memory-mapped file owned by the orchestrator.

    Used as a context manager; the backing directory is removed on exit.
    """

    def __init__(self, counts: np.ndarray, directory: Optional[Union[str, Path]] = None) -> None:
        self.counts = counts
        self.directory = Path(directory) if directory is not None else None
        self._tmp: Optional[tempfile.TemporaryDirectory] = None
        self.handle: Optional[ArenaHandle] = None

    def __enter__(self) -> ArenaHandle:
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
        self._tmp = tempfile.TemporaryDirectory(prefix="trajmarge-", dir=self.directory)
        path = Path(self._tmp.name) / "counts.f8"
        mm = np.memmap(path, dtype="float64", mode="w+", shape=self.counts.shape)
        mm[:] = self.counts
        mm.flush()
        del mm
        self.handle = ArenaHandle(str(path), tuple(self.counts.shape))
        return self.handle

    def __exit__(self, *exc) -> None:
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None


# ======================
# Per-gene work
# ======================


@dataclass(frozen=True)
class GeneTask:
    """Everything a worker needs to test one gene on all lineages."""

    index: int
    gene: str
    arena: ArenaHandle
    pt: np.ndarray  # (n_cells, n_lineages), nan = not on lineage
    offset: Optional[np.ndarray]
    id_vec: Optional[np.ndarray]
    config: DynamicTestConfig
    backend: ModelBackend
    seed: np.random.SeedSequence


def _notes(res: FitResult, extra: Sequence[str] = ()) -> Optional[str]:
    if isinstance(res, FitFailure):
        return "; ".join(list(extra) + [str(res)])
    parts = list(extra) + ([res.model.notes] if res.model.notes else [])
    return "; ".join(parts) or None


def _status(alt: FitResult, null: FitResult) -> str:
    a = "OK" if isinstance(alt, FitSuccess) else "error"
    n = "OK" if isinstance(null, FitSuccess) else "error"
    return f"MARGE model {a}, null model {n}"


def fit_lineage(
    gene: str,
    lineage: str,
    y: np.ndarray,
    t: np.ndarray,
    offset: Optional[np.ndarray],
    id_vec: Optional[np.ndarray],
    config: DynamicTestConfig,
    backend: ModelBackend,
    rng: np.random.Generator,
) -> GeneLineageRecord:
    """Fit the adaptive and null models for one lineage and test them.

    Any exception is logged and turned into an all-``nan`` record.
    """
    stat_type = STAT_TYPES[config.test_kind]
    state = UnitState.PENDING
    try:
        cells = np.flatnonzero(np.isfinite(t))
        tc, yc = t[cells], y[cells]
        off = offset[cells] if offset is not None else None
        subj = id_vec[cells] if id_vec is not None else None

        state = UnitState.FITTING_ALT
        t0 = time.perf_counter()
        alt: MargeResult = marge(
            tc,
            yc,
            off,
            subj,
            backend,
            M=config.n_potential_basis_fns,
            approx_knot=config.approx_knot,
            rng=rng,
            adaptive=config.glmm_adaptive or not config.is_glmm,
        )
        gene_time = time.perf_counter() - t0

        state = UnitState.FITTING_NULL
        null = backend.fit(np.ones((yc.size, 1)), yc, off, subj)
        if isinstance(null, FitSuccess):
            null.model.column_names = column_names(())

        state = UnitState.TESTING
        test: TestResult = run_test(
            config.test_kind, alt.fit, null, config.gee_bias_correction_method
        )
        robust = config.is_gee and config.gee_bias_correction_method is not None
        a, n = alt.model, null.model if isinstance(null, FitSuccess) else None
        record = GeneLineageRecord(
            gene=gene,
            lineage=lineage,
            test_stat=test.statistic,
            test_stat_type=test.stat_type,
            test_stat_note=test.note or None,
            degrees_freedom=test.df,
            p_value=test.p_value,
            loglik_marge=a.loglik if a is not None else np.nan,
            loglik_null=n.loglik if n is not None else np.nan,
            dev_marge=a.deviance if a is not None else np.nan,
            dev_null=n.deviance if n is not None else np.nan,
            model_status=_status(alt.fit, null),
            marge_fit_notes=_notes(alt.fit, alt.notes),
            null_fit_notes=_notes(null),
            gene_time=gene_time,
            marge_summary=coefficient_table(a, robust) if a is not None else None,
            null_summary=coefficient_table(n, robust) if n is not None else None,
            marge_preds=fitted_values(a, tc) if a is not None else None,
            null_preds=fitted_values(n, tc) if n is not None else None,
            marge_slope_data=slope_data(alt.terms, a.coef, tc) if a is not None else None,
            gene_dynamics=gene_dynamics(alt.terms, a.coef, tc) if a is not None else None,
        )
        state = UnitState.DONE
        return record
    except Exception as exc:
        logger.warning("%s / Lineage_%s failed while %s: %r", gene, lineage, state.value, exc)
        return failed_record(gene, lineage, stat_type, f"{state.value} error: {exc!r}")


def _run_gene(task: GeneTask) -> Dict[str, GeneLineageRecord]:
    """Worker entry point: test one gene on every lineage."""
    y = task.arena.row(task.index)
    n_lineages = task.pt.shape[1]
    seeds = task.seed.spawn(n_lineages)
    out: Dict[str, GeneLineageRecord] = {}
    for j in range(n_lineages):
        label = lineage_label(j)
        out[f"Lineage_{label}"] = fit_lineage(
            task.gene,
            label,
            y,
            task.pt[:, j],
            task.offset,
            task.id_vec,
            task.config,
            task.backend,
            np.random.default_rng(seeds[j]),
        )
    return out


def _execute(
    tasks: List[GeneTask], n_workers: int, verbose: bool
) -> List[Union[Dict[str, GeneLineageRecord], WorkerError]]:
    """Run the tasks and return their outputs in submission order."""
    slots: List[Union[Dict[str, GeneLineageRecord], WorkerError, None]] = [None] * len(tasks)
    bar = tqdm(total=len(tasks), desc="Testing genes", disable=not verbose)
    try:
        if n_workers <= 1:
            for i, task in enumerate(tasks):
                try:
                    slots[i] = _run_gene(task)
                except Exception as exc:
                    slots[i] = WorkerError(task.gene, repr(exc))
                bar.update(1)
        else:
            executor = ProcessPoolExecutor(
                max_workers=n_workers, mp_context=mp.get_context("spawn")
            )
            try:
                futures = {executor.submit(_run_gene, task): i for i, task in enumerate(tasks)}
                for fut in as_completed(futures):
                    i = futures[fut]
                    try:
                        slots[i] = fut.result()
                    except Exception as exc:
                        slots[i] = WorkerError(tasks[i].gene, repr(exc))
                    bar.update(1)
            except BaseException:
                executor.shutdown(wait=False, cancel_futures=True)
                raise
            executor.shutdown(wait=True)
    finally:
        bar.close()
    return slots


# ======================
# Input handling
# ======================


def _extract_counts(
    expr_mat, genes: Optional[Sequence[str]]
) -> Tuple[np.ndarray, List[str]]:
    """Dense genes x cells counts and gene names."""
    names: Optional[List[str]] = None
    if isinstance(expr_mat, ad.AnnData):
        X = expr_mat.layers["counts"] if "counts" in expr_mat.layers else expr_mat.X
        X = X.toarray() if sparse.issparse(X) else np.asarray(X)
        counts = X.T
        names = [str(g) for g in expr_mat.var_names]
    elif isinstance(expr_mat, pd.DataFrame):
        counts = expr_mat.to_numpy()
        names = [str(g) for g in expr_mat.index]
    elif sparse.issparse(expr_mat):
        counts = expr_mat.toarray()
    elif isinstance(expr_mat, np.ndarray):
        counts = expr_mat
    else:
        raise InputError(
            f"Unsupported expression container {type(expr_mat).__name__}; expected a numpy "
            "array, pandas DataFrame, scipy sparse matrix or AnnData."
        )
    try:
        counts = np.asarray(counts, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InputError(f"Counts must be numeric: {exc}") from exc
    if counts.ndim != 2:
        raise InputError("Counts must be a two-dimensional genes x cells matrix.")

    if genes is not None:
        genes = [str(g) for g in genes]
        if names is not None:
            lookup = {g: i for i, g in enumerate(names)}
            missing = [g for g in genes if g not in lookup]
            if missing:
                raise InputError(f"Genes not found in the expression matrix: {missing[:5]}")
            counts = counts[[lookup[g] for g in genes]]
        elif len(genes) != counts.shape[0]:
            raise InputError(
                f"{len(genes)} gene names given for {counts.shape[0]} rows of counts."
            )
        names = genes
    elif names is None:
        names = [f"Gene_{i + 1}" for i in range(counts.shape[0])]

    if len(set(names)) != len(names):
        raise InputError("Gene names must be unique.")
    if counts.shape[0] == 0:
        raise InputError("No genes to test.")
    if not np.isfinite(counts).all() or np.any(counts < 0):
        raise InputError("Counts must be finite and non-negative.")
    if not np.all(counts == np.round(counts)):
        raise InputError("Counts must be integer valued.")
    return counts, names


def _lineage_table(pt, n_cells: int) -> np.ndarray:
    if isinstance(pt, pd.Series):
        pt = pt.to_frame()
    values = pt.to_numpy(dtype=float) if isinstance(pt, pd.DataFrame) else np.asarray(pt, dtype=float)
    if values.ndim == 1:
        values = values[:, None]
    if values.ndim != 2 or values.shape[0] != n_cells:
        raise InputError(
            f"Pseudotime must have one row per cell ({n_cells}); got shape {values.shape}."
        )
    if not 1 <= values.shape[1] <= len(string.ascii_uppercase):
        raise InputError("Pseudotime must have between 1 and 26 lineage columns.")
    if np.isinf(values).any():
        raise InputError("Pseudotime values must be finite (use NaN for cells off a lineage).")
    return values


def _offset(size_factor_offset, n_cells: int) -> Optional[np.ndarray]:
    if size_factor_offset is None:
        return None
    f = np.asarray(size_factor_offset, dtype=float).ravel()
    if f.size != n_cells:
        raise InputError(f"size_factor_offset has {f.size} entries for {n_cells} cells.")
    if not (np.isfinite(f).all() and np.all(f > 0)):
        raise InputError("size_factor_offset must be finite and positive.")
    return np.log(1.0 / f)


def _subjects(id_vec, n_cells: int, required: bool) -> Optional[np.ndarray]:
    if id_vec is None:
        if required:
            raise InputError("id_vec is required for the GEE and GLMM frameworks.")
        return None
    ids = np.asarray(id_vec)
    if ids.ndim != 1 or ids.size != n_cells:
        raise InputError(f"id_vec must have one entry per cell ({n_cells}).")
    if required and not pd.Index(ids).is_monotonic_increasing:
        raise InputError("Observations must be ordered by subject (id_vec must be sorted).")
    return ids


def test_dynamic(
    expr_mat,
    pt,
    genes: Optional[Sequence[str]] = None,
    size_factor_offset=None,
    *,
    is_gee: bool = False,
    cor_structure: str = "ar1",
    gee_bias_correction_method: Optional[str] = None,
    gee_test: str = "wald",
    is_glmm: bool = False,
    glmm_adaptive: bool = True,
    id_vec=None,
    n_potential_basis_fns: int = 5,
    n_jobs: int = 4,
    approx_knot: bool = True,
    verbose: bool = True,
    random_seed: int = 312,
) -> Dict[str, Dict[str, GeneLineageRecord]]:
    """Test each gene for dynamic expression along each pseudotime lineage.

    For every (gene, lineage) pair, an adaptive NB hinge-spline model is
    compared with an intercept-only null model of the same framework: an
    LRT for GLM and GLMM, a Wald or score test for GEE.

    Parameters
    ----------
    expr_mat : np.ndarray | pd.DataFrame | scipy.sparse matrix | anndata.AnnData
        Raw integer counts, genes x cells (AnnData is cells x genes and its
        ``counts`` layer is preferred over ``.X``).
    pt : pd.DataFrame | np.ndarray
        Pseudotime, one row per cell and one column per lineage; NaN marks
        cells that are not on a lineage.
    genes : Sequence[str], optional
        Genes to test (default: all rows).
    size_factor_offset : array-like, optional
        Positive per-cell size factors; the model offset is ``log(1 / factor)``.
    is_gee : bool, optional
        Use the GEE framework (default: False).
    cor_structure : {"ar1", "independence", "exchangeable"}, optional
        GEE working correlation (default: "ar1").
    gee_bias_correction_method : {"kc", "df"}, optional
        Bias correction of the GEE sandwich variance (default: None).
    gee_test : {"wald", "score"}, optional
        GEE test statistic (default: "wald").
    is_glmm : bool, optional
        Use the GLMM framework (default: False).
    glmm_adaptive : bool, optional
        Select the GLMM basis adaptively; otherwise 4 evenly spaced knots
        (default: True).
    id_vec : array-like, optional
        Per-cell subject ids, sorted; required for GEE and GLMM.
    n_potential_basis_fns : int, optional
        Maximum number of hinge terms (default: 5).
    n_jobs : int, optional
        Number of worker processes (default: 4).
    approx_knot : bool, optional
        Thin the candidate knot space (default: True).
    verbose : bool, optional
        Show a progress bar and log the run summary on stderr at the
        configured ``log_level`` (default: True).
    random_seed : int, optional
        Seed of the per-gene random streams (default: 312). Every run, a
        single-worker one included, draws from ``SeedSequence(random_seed)``
        children rather than the global NumPy state, so results do not depend
        on ``n_jobs``.

    Returns
    -------
    Dict[str, Dict[str, GeneLineageRecord]]
        ``results[gene]["Lineage_A"]``, in input gene order.

    Raises
    ------
    InputError
        If the inputs or options are invalid.
    """
    start = time.perf_counter()
    try:
        config = DynamicTestConfig(
            is_gee=is_gee,
            cor_structure=cor_structure,
            gee_bias_correction_method=gee_bias_correction_method,
            gee_test=gee_test,
            is_glmm=is_glmm,
            glmm_adaptive=glmm_adaptive,
            n_potential_basis_fns=n_potential_basis_fns,
            n_jobs=n_jobs,
            approx_knot=approx_knot,
            verbose=verbose,
            random_seed=random_seed,
        )
    except ValidationError as exc:
        raise InputError(str(exc)) from exc

    counts, names = _extract_counts(expr_mat, genes)
    n_cells = counts.shape[1]
    table = _lineage_table(pt, n_cells)
    offset = _offset(size_factor_offset, n_cells)
    ids = _subjects(id_vec, n_cells, config.needs_subject)

    backend = make_backend(
        is_gee=config.is_gee,
        is_glmm=config.is_glmm,
        cor_structure=config.cor_structure,
        bias_correction=config.gee_bias_correction_method,
    )
    settings = Settings()
    if config.verbose:
        configure_logging(settings.log_level)
    seeds = np.random.SeedSequence(config.random_seed).spawn(len(names))
    n_workers = min(config.n_jobs, len(names))
    stat_type = STAT_TYPES[config.test_kind]

    with CountsArena(counts, settings.cache_dir) as arena:
        tasks = [
            GeneTask(i, g, arena, table, offset, ids, config, backend, seeds[i])
            for i, g in enumerate(names)
        ]
        outputs = _execute(tasks, n_workers, config.verbose)

    results: Dict[str, Dict[str, GeneLineageRecord]] = {}
    for gene, out in zip(names, outputs):
        if isinstance(out, WorkerError):
            logger.warning("worker failed on %s: %s", gene, out.message)
            out = {
                f"Lineage_{lineage_label(j)}": failed_record(
                    gene, lineage_label(j), stat_type, out.message
                )
                for j in range(table.shape[1])
            }
        results[gene] = out

    logger.info(
        "trajmarge testing in %s mode completed for %d genes across %d lineage(s) in %.3f seconds",
        config.mode,
        len(names),
        table.shape[1],
        time.perf_counter() - start,
    )
    return results


test_dynamic.__test__ = False
