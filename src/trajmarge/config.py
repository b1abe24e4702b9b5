"""Configuration for the project."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from platformdirs import user_cache_dir, user_config_dir
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env if present (TRAJMARGE_* overrides)
load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class DynamicTestConfig(BaseModel):
    """Options of one :func:`trajmarge.tl.test_dynamic` run."""

    is_gee: bool = False
    cor_structure: Literal["ar1", "independence", "exchangeable"] = "ar1"
    gee_bias_correction_method: Optional[Literal["kc", "df"]] = None
    gee_test: Literal["wald", "score"] = "wald"
    is_glmm: bool = False
    glmm_adaptive: bool = True
    n_potential_basis_fns: int = Field(5, ge=1)
    n_jobs: int = Field(4, ge=1)
    approx_knot: bool = True
    verbose: bool = True
    random_seed: int = Field(312, ge=0)

    @model_validator(mode="after")
    def one_framework(self) -> "DynamicTestConfig":
        """Reject requests for both the GEE and the GLMM framework."""
        if self.is_gee and self.is_glmm:
            raise ValueError("is_gee and is_glmm cannot both be True.")
        return self

    @property
    def mode(self) -> str:
        """Name of the modelling framework: ``GLM``, ``GEE`` or ``GLMM``."""
        if self.is_glmm:
            return "GLMM"
        if self.is_gee:
            return "GEE"
        return "GLM"

    @property
    def test_kind(self) -> str:
        """Test statistic used in this mode."""
        return self.gee_test if self.is_gee else "lrt"

    @property
    def needs_subject(self) -> bool:
        return self.is_gee or self.is_glmm


class Settings(BaseSettings):
    """Main configuration class for the project."""

    model_config = SettingsConfigDict(env_prefix="trajmarge_", env_nested_delimiter="__")
    # Example: TRAJMARGE_TESTING__N_JOBS=8 overrides testing.n_jobs

    testing: DynamicTestConfig = DynamicTestConfig()
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    cache_dir: Optional[Path] = None  # default later

    @field_validator("cache_dir", mode="after")
    @classmethod
    def default_cache(cls, v):
        """Set default cache directory if not provided.

        Parameters
        ----------
        v : Optional[Path]
            User-provided cache directory path.

        Returns
        -------
        Path
            Default cache directory path if not provided, otherwise the user-provided path.
        """
        return v or Path(user_cache_dir("trajmarge"))


def deep_merge(a: dict, b: dict) -> dict:
    """Recursively merge two dictionaries.

    Parameters
    ----------
    a : dict
        The first dictionary.
    b : dict
        The second dictionary.

    Returns
    -------
    dict
        A new dictionary that is the result of merging `a` and `b`.
    """
    out = dict(a)
    for k, v in b.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_yaml(path: Path) -> dict:
    """Load a YAML file and return its contents as a dictionary.

    Parameters
    ----------
    path : Path
        Path to the YAML file.

    Returns
    -------
    dict
        The contents of the YAML file as a dictionary. Returns an empty dict if the file does not exist or is empty.
    """
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text()) or {}


def load_settings(
    config_dir: Optional[Union[str, Path]] = None, profile: Optional[str] = None
) -> Settings:
    """Merge configs in order: base.yml -> local.yml (if present) -> {profile}.yml (if given).

    ``TRAJMARGE_`` environment variables fill in whatever the files leave unset.

    Parameters
    ----------
    config_dir : str | Path, optional
        Directory holding the YAML files (default: the user config directory).
    profile : Optional[str], optional
        Optional profile name to load additional settings from a specific YAML file (default is None).

    Returns
    -------
    Settings
        The merged and validated settings object.
    """
    cfg_dir = Path(config_dir) if config_dir is not None else Path(user_config_dir("trajmarge"))

    merged = deep_merge(load_yaml(cfg_dir / "base.yml"), load_yaml(cfg_dir / "local.yml"))
    if profile:
        merged = deep_merge(merged, load_yaml(cfg_dir / f"{profile}.yml"))
    return Settings(**merged)


def configure_logging(level: Union[int, str] = "INFO") -> logging.Logger:
    """Attach a stream handler to the package logger (once) and set its level.

    Parameters
    ----------
    level : int | str, optional
        Logging level (default: "INFO").

    Returns
    -------
    logging.Logger
        The ``trajmarge`` logger.
    """
    logger = logging.getLogger("trajmarge")
    if not any(getattr(h, "_trajmarge", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._trajmarge = True
        logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger
