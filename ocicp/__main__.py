import argparse
import os
import signal
import sys
import textwrap
import threading

import requests

import ocicp.auth
import ocicp.client
import ocicp.cp
import ocicp.ctx
import ocicp.log
import ocicp.model as om


def _credentials_lookup(remote_cfg: ocicp.ctx.RemoteCfg):
    if remote_cfg.username or remote_cfg.password:
        if not (remote_cfg.username and remote_cfg.password):
            print('Error: username and password must be passed together', file=sys.stderr)
            exit(1)
        return ocicp.auth.static_credentials_lookup(
            username=remote_cfg.username,
            password=remote_cfg.password,
        )

    docker_cfg = remote_cfg.docker_cfg
    if docker_cfg and not os.path.exists(docker_cfg):
        print(f'Error: not an existing file: {docker_cfg=}', file=sys.stderr)
        exit(1)

    if not docker_cfg:
        for candidate in (
            os.path.expandvars('$HOME/.docker/config.json'),
            '/docker-cfg.json',
        ):
            if os.path.exists(candidate):
                docker_cfg = candidate
                break # first existing candidate wins

    # we already checked that _if_ user passed-in docker_cfg, it also exists; if user did _not_
    # pass-in docker-cfg, try anonymous authentication
    return ocicp.auth.docker_credentials_lookup(
        docker_cfg=docker_cfg,
        absent_ok=True,
    )


def _oci_client(
    remote_cfg: ocicp.ctx.RemoteCfg,
    cfg: ocicp.ctx.GlobalConfig,
) -> ocicp.client.Client:
    return ocicp.client.Client(
        credentials_lookup=_credentials_lookup(remote_cfg=remote_cfg),
        routes=ocicp.client.OciRoutes(plain_http=bool(remote_cfg.plain_http)),
        disable_tls_validation=bool(remote_cfg.insecure),
        timeout_seconds=cfg.timeout_seconds,
    )


def cp(parsed, cfg: ocicp.ctx.GlobalConfig):
    cancel = threading.Event()

    def on_sigint(signum, frame):
        print('interrupted - cancelling copy', file=sys.stderr)
        cancel.set()

    signal.signal(signal.SIGINT, on_sigint)

    ocicp.cp.copy_artifact(
        src_ref=parsed.src_ref,
        dst_ref=parsed.dst_ref,
        recursive=parsed.recursive,
        verbose=parsed.verbose,
        src_client=_oci_client(remote_cfg=cfg.source, cfg=cfg),
        dst_client=_oci_client(remote_cfg=cfg.destination, cfg=cfg),
        cancel=cancel,
        concurrency=cfg.concurrency,
    )


def _add_remote_args(parser: argparse.ArgumentParser, prefix: str, description: str):
    group = parser.add_argument_group(f'{description} registry')
    group.add_argument(
        f'--{prefix}-docker-cfg',
        default=None,
        help=f'docker config.json to read {description} credentials from',
    )
    group.add_argument(f'--{prefix}-username', default=None)
    group.add_argument(f'--{prefix}-password', default=None)
    group.add_argument(
        f'--{prefix}-plain-http',
        action='store_true',
        help=f'use plain http (instead of https) to talk to {description} registry',
    )
    group.add_argument(
        f'--{prefix}-insecure',
        action='store_true',
        help=f'do not validate {description} registry\'s TLS-certificate',
    )


def main():
    parser = argparse.ArgumentParser(prog='ocicp')
    subcmd_parsers = parser.add_subparsers(
        title='commands',
        required=True,
    )

    cp_parser = subcmd_parsers.add_parser(
        'cp',
        aliases=('copy',),
        help='copy manifests between repositories',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            '''\
            examples:
              copy the manifest tagged 'v1' from repository 'localhost:5000/net-monitor' to
              repository 'localhost:5000/net-monitor-copy':

                ocicp cp localhost:5000/net-monitor:v1 localhost:5000/net-monitor-copy:v1

              also copy artifacts referencing it (e.g. signatures):

                ocicp cp -r localhost:5000/net-monitor:v1 localhost:5000/net-monitor-copy:v1
            '''),
    )
    cp_parser.set_defaults(callable=cp)
    cp_parser.add_argument('--debug', action='store_true', help='emit debug-logs')
    cp_parser.add_argument('--verbose', '-v', action='store_true', help='verbose output')
    cp_parser.add_argument('src_ref', metavar='from-ref')
    cp_parser.add_argument('dst_ref', metavar='to-ref')
    cp_parser.add_argument(
        '--recursive', '-r',
        action='store_true',
        help='recursively copy artifacts that reference the artifact being copied',
    )
    cp_parser.add_argument(
        '--concurrency',
        type=int,
        default=None,
        help='max. number of blobs to transfer in parallel',
    )
    cp_parser.add_argument(
        '--timeout',
        type=int,
        default=None,
        help='timeout (in seconds) for requests against registries',
    )
    _add_remote_args(cp_parser, prefix='from', description='source')
    _add_remote_args(cp_parser, prefix='to', description='destination')

    parsed = parser.parse_args()

    ocicp.log.configure_default_logging(
        level=ocicp.log.log_level(debug=parsed.debug, verbose=parsed.verbose),
    )

    cfg = ocicp.ctx.load_config(parsed=parsed)

    try:
        parsed.callable(
            parsed=parsed,
            cfg=cfg,
        )
    # ValueError: e.g. malformed credentials or config values
    except (om.OciCopyError, requests.exceptions.RequestException, ValueError) as e:
        print(f'Error: {e}', file=sys.stderr)
        exit(1)


if __name__ == '__main__':
    main()
