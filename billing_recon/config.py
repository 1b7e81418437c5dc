from zoneinfo import ZoneInfo

from billing_recon.config_schema import load_and_validate_config, ReconConfig


def load_config(config_path: str = "config/recon_config.yaml") -> dict:
    """
    Load configuration from YAML file with validation.

    Parameters
    ----------
    config_path : str
        Path to the configuration YAML file (relative to project root or absolute)

    Returns
    -------
    dict
        Validated configuration dictionary

    Raises
    ------
    FileNotFoundError
        If config file doesn't exist
    ValidationError
        If configuration is invalid
    """
    return load_and_validate_config(config_path).model_dump()


def load_config_validated(config_path: str = "config/recon_config.yaml") -> ReconConfig:
    """
    Load and return validated configuration object.

    Parameters
    ----------
    config_path : str
        Path to the configuration YAML file

    Returns
    -------
    ReconConfig
        Validated configuration object with type hints and validation
    """
    return load_and_validate_config(config_path)


def resolve_timezone(config: ReconConfig):
    """Return the ``ZoneInfo`` for ``aggregation.timezone`` or ``None`` for local time."""
    name = config.aggregation.timezone
    return ZoneInfo(name) if name else None
