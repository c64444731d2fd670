# File: utils/config_utils.py
# Description: Utility functions for loading, validating, and resolving the pipeline YAML configuration.

import logging
import os  # Import OS for file and directory handling
from pathlib import Path  # Import Path for OS-independent file paths
from typing import Any, Dict, List, Optional

import yaml  # Import PyYAML for reading and parsing YAML files

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = str(Path(__file__).resolve().parent.parent / "config" / "pipeline_config.yaml")

REQUIRED_KEYS = ["data_dir", "output_dir", "sample_metadata", "studies"]

NORMALIZATION_BACKENDS = {"scan", "quantile"}

DE_ENGINES = {"limma", "python"}


class ConfigLoaderError(Exception):
    """
    Custom exception for errors encountered during configuration loading or validation.
    """
    pass


def load_config(config_file_path: str, default_config: dict = None) -> dict:
    """
    Load the configuration from a YAML file.

    Args:
        config_file_path (str): Path to the YAML configuration file.
        default_config (dict, optional): Default configuration to use if the file is missing.

    Returns:
        dict: Parsed configuration dictionary.

    Raises:
        ConfigLoaderError: If the configuration file does not exist or fails to parse.
    """
    if not os.path.exists(config_file_path):
        if default_config is not None:
            logger.warning(f"Config file '{config_file_path}' not found. Using default configuration.")
            return default_config
        raise ConfigLoaderError(f"Config file '{config_file_path}' not found.")

    try:
        with open(config_file_path, "r") as config_file:
            config = yaml.safe_load(config_file)
    except yaml.YAMLError as e:
        raise ConfigLoaderError(f"Error parsing YAML file '{config_file_path}': {e}")

    if not isinstance(config, dict):
        raise ConfigLoaderError(f"Config file '{config_file_path}' must contain a mapping.")
    return config


def validate_config(config: dict, required_keys: list = None) -> None:
    """
    Validate that required keys are present in the configuration dictionary.

    Args:
        config (dict): The configuration dictionary to validate.
        required_keys (list): Keys that must be present; defaults to REQUIRED_KEYS.

    Raises:
        ConfigLoaderError: If any required keys are missing or a study entry is invalid.
    """
    required_keys = REQUIRED_KEYS if required_keys is None else required_keys
    missing_keys = [key for key in required_keys if key not in config]
    if missing_keys:
        raise ConfigLoaderError(f"Missing required keys in configuration: {missing_keys}")

    studies = config.get("studies") or {}
    if not studies:
        raise ConfigLoaderError("Configuration must list at least one study.")

    for study_id, study in studies.items():
        backend = (study or {}).get("backend", "scan")
        if backend not in NORMALIZATION_BACKENDS:
            raise ConfigLoaderError(
                f"Study {study_id} uses unknown backend '{backend}'. Expected one of {sorted(NORMALIZATION_BACKENDS)}."
            )
        if not ((study or {}).get("annotation") or {}).get("path"):
            raise ConfigLoaderError(f"Study {study_id} has no annotation path.")

    batch_studies = config.get("batch_correction", {}).get("studies") or []
    unknown = [s for s in batch_studies if s not in studies]
    if unknown:
        raise ConfigLoaderError(f"Batch correction lists unknown studies: {unknown}")

    unknown = [s for s in (config.get("signatures") or {}) if s not in batch_studies]
    if unknown:
        raise ConfigLoaderError(f"Signatures require batch-corrected studies, got: {unknown}")

    for study_id, signature in (config.get("signatures") or {}).items():
        engine = (signature or {}).get("engine", "limma")
        if engine not in DE_ENGINES:
            raise ConfigLoaderError(
                f"Signature for {study_id} uses unknown engine '{engine}'. Expected one of {sorted(DE_ENGINES)}."
            )


def ensure_directories(config: dict, keys: list) -> None:
    """
    Ensure that all directories specified in the configuration exist.

    Args:
        config (dict): The configuration dictionary containing directory paths.
        keys (list): List of keys in the configuration that correspond to directory paths.

    Raises:
        ConfigLoaderError: If any directory paths are invalid.
    """
    for key in keys:
        dir_path = config.get(key)
        if not dir_path:
            raise ConfigLoaderError(f"Missing or invalid directory path for key: {key}")

        try:
            os.makedirs(dir_path, exist_ok=True)
            logger.debug(f"Verified or created directory: {dir_path}")
        except OSError as e:
            raise ConfigLoaderError(f"Error creating directory '{dir_path}': {e}")


def resolve_config(config: dict, base_dir: Optional[str] = None) -> Dict[str, Any]:
    """
    Fill defaults and turn relative paths into paths anchored at base_dir.

    Args:
        config (dict): Validated configuration.
        base_dir (Optional[str]): Directory relative paths are resolved against (default: CWD).

    Returns:
        Dict[str, Any]: A new configuration dictionary with defaults applied.
    """
    base = Path(base_dir) if base_dir else Path.cwd()

    def _path(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        path = Path(os.path.expanduser(str(value)))
        return str(path if path.is_absolute() else base / path)

    resolved = dict(config)
    resolved["data_dir"] = _path(config["data_dir"])
    resolved["output_dir"] = _path(config["output_dir"])
    resolved["sample_metadata"] = _path(config["sample_metadata"])
    resolved["table_prefix"] = config.get("table_prefix", "SCAN")
    resolved["rscript"] = config.get("rscript") or os.getenv("RSCRIPT")

    studies: Dict[str, Dict[str, Any]] = {}
    for study_id, study in config["studies"].items():
        study = dict(study or {})
        annotation = dict(study.get("annotation") or {})
        annotation["path"] = _path(
            annotation["path"] if os.path.isabs(annotation["path"])
            else os.path.join(config["data_dir"], annotation["path"])
        )
        annotation.setdefault("probe_column", "ID")
        annotation.setdefault("symbol_column", "Gene symbol")
        annotation.setdefault("subfield_separator", None)
        annotation.setdefault("subfield_index", 0)
        annotation.setdefault("db_package", None)
        study["annotation"] = annotation
        study["backend"] = study.get("backend", "scan")
        study["raw_dir"] = _path(os.path.join(config["data_dir"], study.get("raw_dir", f"{study_id}_RAW")))
        study.setdefault("annotation_package", None)
        study.setdefault("platform", None)
        studies[study_id] = study
    resolved["studies"] = studies

    batch = dict(config.get("batch_correction") or {})
    batch["studies"] = list(batch.get("studies") or studies.keys())
    batch.setdefault("covariate", None)
    batch.setdefault("mean_only", False)
    batch.setdefault("prior_plots", False)
    resolved["batch_correction"] = batch

    signatures: Dict[str, Dict[str, Any]] = {}
    for study_id, signature in (config.get("signatures") or {}).items():
        signature = dict(signature or {})
        signature.setdefault("groups", None)
        signature.setdefault("top_k", 50)
        signature.setdefault("engine", "limma")
        signatures[study_id] = signature
    resolved["signatures"] = signatures

    return resolved


def load_pipeline_config(config_file_path: str = DEFAULT_CONFIG_PATH, base_dir: Optional[str] = None) -> dict:
    """
    Load, validate and resolve a pipeline configuration in one call.

    Args:
        config_file_path (str): Path to the YAML configuration file.
        base_dir (Optional[str]): Directory relative paths are resolved against.

    Returns:
        dict: Resolved configuration.
    """
    config = load_config(config_file_path)
    validate_config(config)
    return resolve_config(config, base_dir=base_dir)


def study_ids(config: dict) -> List[str]:
    """
    Returns the configured study accessions in declaration order.
    """
    return list(config["studies"].keys())
