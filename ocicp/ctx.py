'''
layered configuration. Layers are (in order of precedence, last wins):

- user-home (~/.ocicp.yaml)
- environment (OCICP_* variables)
- parsed command line arguments

values that are absent (None, or empty) never overwrite values from previous layers.
'''

import argparse
import dataclasses
import logging
import os

import dacite
import deepmerge
import yaml

logger = logging.getLogger(__name__)

CFG_FILE_NAME = '.ocicp.yaml'


@dataclasses.dataclass
class RemoteCfg:
    docker_cfg: str | None = None
    username: str | None = None
    password: str | None = None
    plain_http: bool | None = None
    insecure: bool | None = None


@dataclasses.dataclass
class GlobalConfig:
    concurrency: int | None = None
    timeout_seconds: int | None = None
    source: RemoteCfg = dataclasses.field(default_factory=RemoteCfg)
    destination: RemoteCfg = dataclasses.field(default_factory=RemoteCfg)


def _strip_absent(value):
    if isinstance(value, dict):
        stripped = {k: _strip_absent(v) for k, v in value.items()}
        return {k: v for k, v in stripped.items() if v not in (None, {}, (), [])}
    return value


def merge_cfgs(left: GlobalConfig, right: GlobalConfig | None) -> GlobalConfig:
    if not right:
        return left

    merger = deepmerge.Merger(
        [(dict, ['merge'])],
        ['override'],
        ['override'],
    )
    merged = merger.merge(
        _strip_absent(dataclasses.asdict(left)),
        _strip_absent(dataclasses.asdict(right)),
    )

    return dacite.from_dict(
        data_class=GlobalConfig,
        data=merged,
    )


def _config_from_user_home(home: str=None) -> GlobalConfig | None:
    if not home:
        home = os.path.expanduser('~')

    cfg_file_path = os.path.join(home, CFG_FILE_NAME)
    if not os.path.isfile(cfg_file_path):
        return None

    logger.debug(f'reading cfg from {cfg_file_path=}')
    with open(cfg_file_path) as f:
        raw = yaml.safe_load(f) or {}

    return dacite.from_dict(
        data_class=GlobalConfig,
        data=raw,
        config=dacite.Config(strict=True),
    )


def _config_from_env(env: dict=None) -> GlobalConfig:
    if env is None:
        env = os.environ

    if concurrency := env.get('OCICP_CONCURRENCY'):
        concurrency = int(concurrency)
    if timeout_seconds := env.get('OCICP_TIMEOUT_SECONDS'):
        timeout_seconds = int(timeout_seconds)

    docker_cfg = env.get('OCICP_DOCKER_CFG')

    return GlobalConfig(
        concurrency=concurrency or None,
        timeout_seconds=timeout_seconds or None,
        source=RemoteCfg(docker_cfg=docker_cfg),
        destination=RemoteCfg(docker_cfg=docker_cfg),
    )


def _config_from_parsed_argv(parsed: argparse.Namespace) -> GlobalConfig | None:
    if not parsed:
        return None

    def remote_cfg(prefix: str):
        return RemoteCfg(
            docker_cfg=getattr(parsed, f'{prefix}_docker_cfg', None),
            username=getattr(parsed, f'{prefix}_username', None),
            password=getattr(parsed, f'{prefix}_password', None),
            # store_true-flags: only `True` is an explicit choice
            plain_http=getattr(parsed, f'{prefix}_plain_http', None) or None,
            insecure=getattr(parsed, f'{prefix}_insecure', None) or None,
        )

    return GlobalConfig(
        concurrency=getattr(parsed, 'concurrency', None),
        timeout_seconds=getattr(parsed, 'timeout', None),
        source=remote_cfg('from'),
        destination=remote_cfg('to'),
    )


def load_config(
    parsed: argparse.Namespace=None,
    env: dict=None,
    home: str=None,
) -> GlobalConfig:
    cfg = GlobalConfig()

    additional_cfgs = (
        _config_from_user_home(home=home),
        _config_from_env(env=env),
        _config_from_parsed_argv(parsed=parsed),
    )

    for additional_cfg in additional_cfgs:
        cfg = merge_cfgs(cfg, additional_cfg)

    return cfg
