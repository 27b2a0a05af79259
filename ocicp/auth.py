'''
credentials-lookups for OCI registries

a credentials-lookup is a callable accepting an image-reference, the privileges required for the
intended operation, and `absent_ok`. It returns matching credentials, or None if there are none
(and `absent_ok` is truthy), in which case clients fall back to anonymous access.
'''

import base64
import collections.abc
import dataclasses
import enum
import functools
import json
import logging
import os

import ocicp.util

logger = logging.getLogger(__name__)


@functools.total_ordering
class Privileges(enum.Enum):
    READONLY = 'readonly'
    READWRITE = 'readwrite'

    def __lt__(self, other):
        if not isinstance(other, Privileges):
            return NotImplemented
        members = list(Privileges)
        return members.index(self) < members.index(other)


@dataclasses.dataclass(frozen=True)
class OciCredentials:
    pass


@dataclasses.dataclass(frozen=True)
class OciBasicAuthCredentials(OciCredentials):
    username: str
    password: str

    def __repr__(self):
        return f'OciBasicAuthCredentials(username={self.username!r}, password=***)'


@dataclasses.dataclass(frozen=True)
class OciConfig:
    '''
    credentials granting `privileges` for all image-references starting with one of
    `url_prefixes` (or for all image-references, if no prefixes are given)
    '''
    privileges: Privileges
    credentials: OciCredentials
    url_prefixes: collections.abc.Sequence[str] = ()

    def valid_for(
        self,
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
    ) -> bool:
        if privileges and privileges > self.privileges:
            return False

        if not self.url_prefixes:
            return True

        # match both as passed-in, and normalised (e.g. `alpine` vs. docker-hub)
        candidates = (
            image_reference.lower(),
            ocicp.util.normalise_image_reference(image_reference).lower(),
        )
        for prefix in self.url_prefixes:
            prefixes = (
                prefix.lower(),
                ocicp.util.normalise_image_reference(prefix).lower(),
            )
            if any(c.startswith(p) for c in candidates for p in prefixes):
                return True

        return False


# typehint-alias
credentials_lookup = collections.abc.Callable[[str, Privileges, bool], OciCredentials | None]


def mk_credentials_lookup(
    cfgs: OciConfig | collections.abc.Sequence[OciConfig],
) -> credentials_lookup:
    '''
    returns a lookup choosing, amongst all matching cfgs, the one w/ the least privileges
    '''
    if isinstance(cfgs, OciConfig):
        cfgs = (cfgs,)

    def lookup_credentials(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ) -> OciCredentials | None:
        matching = [
            cfg for cfg in cfgs
            if cfg.valid_for(image_reference=image_reference, privileges=privileges)
        ]

        if not matching:
            if absent_ok:
                return None
            raise ValueError(f'no matching credentials for {image_reference=} {privileges=}')

        return min(matching, key=lambda cfg: cfg.privileges).credentials

    return lookup_credentials


def static_credentials_lookup(
    username: str,
    password: str,
) -> credentials_lookup:
    '''
    returns a lookup always returning the given credentials (e.g. from `--from-username` and
    `--from-password`)
    '''
    return mk_credentials_lookup(
        OciConfig(
            privileges=Privileges.READWRITE,
            credentials=OciBasicAuthCredentials(
                username=username,
                password=password,
            ),
        ),
    )


def _hostname(netloc: str) -> str:
    # docker-cli stores docker-hub's credentials w/ an url as key
    host = netloc.removeprefix('https://').removeprefix('http://').split('/')[0]
    host = host.split(':')[0]

    if host in ('index.docker.io', 'docker.io'):
        return 'registry-1.docker.io'
    return host


def _read_docker_auths(docker_cfg: str) -> dict[str, OciBasicAuthCredentials]:
    with open(docker_cfg) as f:
        auths = json.load(f).get('auths') or {}

    credentials = {}
    for netloc, auth_dict in auths.items():
        if not (auth := auth_dict.get('auth')):
            logger.warning(f'{docker_cfg=}: no `auth` attribute for {netloc=} - ignoring')
            continue

        username, password = base64.b64decode(auth).decode('utf-8').split(':', 1)
        credentials[_hostname(netloc)] = OciBasicAuthCredentials(
            username=username,
            password=password,
        )

    return credentials


def docker_credentials_lookup(
    docker_cfg: str | None=None,
    absent_ok: bool=False,
) -> credentials_lookup:
    '''
    returns a lookup backed by a docker `config.json` (defaults to `$HOME/.docker/config.json`).
    Entries are matched by registry-hostname only (ports are ignored), as docker does not allow
    configuring credentials per repository or privileges.

    raises RuntimeError if docker_cfg does not exist, unless `absent_ok` is truthy, in which
    case the returned lookup never yields credentials (anonymous access).
    '''
    if not docker_cfg:
        docker_cfg = os.path.join(os.environ.get('HOME', ''), '.docker', 'config.json')

    if not os.path.isfile(docker_cfg):
        if not absent_ok:
            raise RuntimeError(f'not an existing file: {docker_cfg=}')
        logger.debug(f'{docker_cfg=} does not exist - will use anonymous access')

    def lookup_credentials(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ) -> OciBasicAuthCredentials | None:
        # re-read for every lookup to honour updates (e.g. from `docker login`)
        if os.path.isfile(docker_cfg):
            auths = _read_docker_auths(docker_cfg)
        else:
            auths = {}

        netloc = ocicp.util.normalise_image_reference(image_reference).split('/')[0]

        if credentials := auths.get(_hostname(netloc)):
            return credentials

        if absent_ok:
            return None
        raise ValueError(f'no credentials in {docker_cfg=} for {image_reference=}')

    return lookup_credentials
