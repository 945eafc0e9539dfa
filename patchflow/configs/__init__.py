import logging
import os.path as osp

import yaml

from patchflow.motion.params import WEIGHTING_RULES
from patchflow.utils.logger import logger


here = osp.dirname(osp.abspath(__file__))


def update_dict(target_dict, new_dict, validate_item=None):
    for key, value in new_dict.items():
        if validate_item:
            validate_item(key, value)
        if key not in target_dict:
            logger.warning("Skipping unexpected key in config: {}".format(key))
            continue
        if isinstance(target_dict[key], dict) and isinstance(value, dict):
            update_dict(target_dict[key], value, validate_item=validate_item)
        else:
            target_dict[key] = value


def get_default_config():
    config_file = osp.join(here, "default_config.yaml")
    with open(config_file) as f:
        config = yaml.safe_load(f)
    return config


def _is_positive_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) \
        and value > 0


def validate_config_item(key, value):
    if key == "weighting" and value not in WEIGHTING_RULES:
        raise ValueError(
            "Unexpected value for config key 'weighting': {}".format(value)
        )
    if key in ("patch_size", "chunk_size", "levels") and not (
        isinstance(value, int) and not isinstance(value, bool) and value > 0
    ):
        raise ValueError(
            "Config key '{}' must be a positive integer: {}".format(key, value)
        )
    if key == "scale" and not (_is_positive_number(value) and value <= 1):
        raise ValueError(
            "Config key 'scale' must be in (0, 1]: {}".format(value)
        )
    if key == "min_err_val" and not _is_positive_number(value):
        raise ValueError(
            "Config key '{}' must be a positive number: {}".format(key, value)
        )
    if key == "cpu_num_threads" and value is not None and not (
        isinstance(value, int) and value > 0
    ):
        raise ValueError(
            "Config key 'cpu_num_threads' must be null or a positive "
            "integer: {}".format(value)
        )
    if key == "level" and not isinstance(
        logging.getLevelName(str(value).upper()), int
    ):
        raise ValueError(
            "Unexpected value for config key 'level': {}".format(value)
        )


def get_config(config_file_or_yaml=None, config_from_args=None):
    # 1. default config
    config = get_default_config()

    # 2. specified as file or yaml
    if config_file_or_yaml is not None:
        config_from_yaml = yaml.safe_load(config_file_or_yaml)
        if not isinstance(config_from_yaml, dict):
            with open(config_from_yaml) as f:
                logger.info(
                    "Loading config file from: {}".format(config_from_yaml)
                )
                config_from_yaml = yaml.safe_load(f) or {}
        update_dict(
            config, config_from_yaml, validate_item=validate_config_item
        )

    # 3. command line argument or specified config file
    if config_from_args is not None:
        update_dict(
            config, config_from_args, validate_item=validate_config_item
        )

    return config
