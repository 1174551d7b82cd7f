from .args_parser import parse_args
from .class_loader import load_class, load_handlers
from .config_util import (
    load_config,
    mask_sensitive_info,
    setup_logging,
)

__all__ = [
    "load_class",
    "load_config",
    "load_handlers",
    "mask_sensitive_info",
    "parse_args",
    "setup_logging",
]
