import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/ivory-operator/config.yaml"
DEFAULT_REFRESH_INTERVAL = 3600
DEFAULT_WORKER_LIMIT = 2
DEFAULT_POSTING_ENABLED = False
DEFAULT_CLUSTER_DOMAIN = "cluster.local"
DEFAULT_REQUEUE_BACKOFF_MAX = 300
DEFAULT_UPGRADE_IMAGE = "docker.io/ivorysql/ivory-upgrade:ubi8-3.0-2.0-1"


class OperatorConfig:
    def __init__(self):
        self.config_path = os.environ.get(
            "IVORY_OPERATOR_CONFIG_PATH", DEFAULT_CONFIG_PATH
        )
        self._config = self._load_config()

        def get_bool(value):
            return str(value).lower() in ("true", "1", "t")

        self.refresh_interval = self._get_value(
            "IVORY_OPERATOR_REFRESH_INTERVAL",
            "refreshInterval",
            DEFAULT_REFRESH_INTERVAL,
            caster=int,
        )
        self.worker_limit = self._get_value(
            "IVORY_OPERATOR_WORKER_LIMIT",
            "workerLimit",
            DEFAULT_WORKER_LIMIT,
            caster=int,
        )
        self.posting_enabled = self._get_value(
            "IVORY_OPERATOR_POSTING_ENABLED",
            "postingEnabled",
            DEFAULT_POSTING_ENABLED,
            caster=get_bool,
        )
        self.cluster_domain = self._get_value(
            "IVORY_OPERATOR_CLUSTER_DOMAIN",
            "clusterDomain",
            DEFAULT_CLUSTER_DOMAIN,
        )
        self.requeue_backoff_max = self._get_value(
            "IVORY_OPERATOR_REQUEUE_BACKOFF_MAX",
            "requeueBackoffMax",
            DEFAULT_REQUEUE_BACKOFF_MAX,
            caster=int,
        )
        self.upgrade_image = self._get_value(
            "IVORY_OPERATOR_UPGRADE_IMAGE",
            "upgradeImage",
            DEFAULT_UPGRADE_IMAGE,
        )

    def _get_value(self, env_key, yaml_key, default, caster=None):
        val = os.environ.get(env_key, self._config.get(yaml_key, default))
        if caster:
            return caster(val)
        return val

    def _load_config(self):
        try:
            with open(self.config_path, "r") as f:
                config_data = yaml.safe_load(f)
                logger.info(f"Loaded operator configuration from {self.config_path}")
                return config_data if config_data else {}
        except FileNotFoundError:
            logger.info(
                f"Operator config file not found at {self.config_path}, using default values."
            )
            return {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(
                f"Error loading operator configuration from {self.config_path}: {e}"
            )
            return {}


# Global config instance to be used across the operator
config = OperatorConfig()
