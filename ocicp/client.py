'''
client for the OCI distribution-API (https://github.com/opencontainers/distribution-spec)

only the subset required for copying artifact-graphs is implemented: reading, checking and
uploading manifests and blobs, and querying the referrers-API. Authentication follows the
registry's `www-authenticate` challenge (bearer-tokens or basic-auth).
'''

import base64
import dataclasses
import datetime
import enum
import json
import logging
import tempfile
import threading
import typing
import urllib.parse

import dacite
import dateutil.parser
import requests
import requests.auth
import www_authenticate

import ocicp.auth as oa
import ocicp.model as om
import ocicp.util

logger = logging.getLogger(__name__)

# emits every outgoing request at DEBUG (silenced by `ocicp.log` unless in debug-mode)
request_logger = logging.getLogger('ocicp.client.request_logger')

USER_AGENT = 'ocicp (python3; requests)'

# token-lifetime to assume if token-service does not state it (see docker token-auth spec)
DEFAULT_TOKEN_LIFETIME_SECONDS = 60

# blobs larger than this are spooled to a temporary file rather than held in memory
MAX_IN_MEMORY_BLOB_OCTETS = 1024 * 1024 * 8 # 8 MiB

image_ref_type = typing.Union[str, om.OciImageReference]


def _append_b64_padding_if_missing(b64_str: str) -> str:
    # JWT uses unpadded base64, which python's base64-module will not accept
    return b64_str + '=' * (-len(b64_str) % 4)


def _jwt_claims(token: str) -> dict | None:
    parts = token.split('.')
    if len(parts) != 3:
        return None # opaque token

    payload = _append_b64_padding_if_missing(parts[1])
    try:
        return json.loads(base64.urlsafe_b64decode(payload.encode('utf-8')))
    except ValueError:
        logger.debug('token looks like, but is not a JWT - treating as opaque')
        return None


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass
class OauthToken:
    token: str
    scope: str
    netloc: str | None = None
    expires_in: int | None = None
    issued_at: str | None = None

    def __post_init__(self):
        if not self.expires_in:
            claims = _jwt_claims(self.token) or {}
            if 'exp' in claims and 'iat' in claims:
                self.expires_in = claims['exp'] - claims['iat']
                self.issued_at = datetime.datetime.fromtimestamp(
                    claims['iat'],
                    tz=datetime.timezone.utc,
                ).isoformat()
            else:
                self.expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        if not self.issued_at:
            self.issued_at = _now().isoformat()

    @property
    def expires_at(self) -> datetime.datetime:
        issued_at = dateutil.parser.isoparse(self.issued_at)
        if not issued_at.tzinfo:
            issued_at = issued_at.replace(tzinfo=datetime.timezone.utc)

        return issued_at + datetime.timedelta(seconds=self.expires_in)

    def valid(self, leeway_seconds: int=10) -> bool:
        return _now() < self.expires_at - datetime.timedelta(seconds=leeway_seconds)


class AuthMethod(enum.Enum):
    BEARER = 'bearer'
    BASIC = 'basic'


class OauthTokenCache:
    '''
    thread-safe cache for bearer-tokens (by registry and scope), and for the auth-method (and
    bearer-challenge) each registry requested
    '''
    def __init__(self):
        self._tokens = {} # {(netloc, scope): OauthToken}
        self._auth_methods = {} # {netloc: (AuthMethod, challenge-params)}
        self._lock = threading.Lock()

    def token(self, scope: str, netloc: str=None) -> OauthToken | None:
        with self._lock:
            token = self._tokens.get((netloc, scope))
            if token and not token.valid():
                del self._tokens[(netloc, scope)]
                return None
            return token

    def set_token(self, token: OauthToken):
        if not token.valid():
            raise ValueError(f'refusing to cache expired token: {token.scope=} {token.expires_at=}')

        with self._lock:
            self._tokens[(token.netloc, token.scope)] = token

    def set_auth_method(
        self,
        image_reference: image_ref_type,
        auth_method: AuthMethod,
        challenge: dict=None,
    ):
        netloc = om.OciImageReference.to_image_ref(image_reference).netloc
        with self._lock:
            self._auth_methods[netloc] = (auth_method, challenge)

    def auth_method(self, image_reference: image_ref_type) -> AuthMethod | None:
        netloc = om.OciImageReference.to_image_ref(image_reference).netloc
        auth_method, _ = self._auth_methods.get(netloc, (None, None))
        return auth_method

    def challenge(self, image_reference: image_ref_type) -> dict | None:
        netloc = om.OciImageReference.to_image_ref(image_reference).netloc
        _, challenge = self._auth_methods.get(netloc, (None, None))
        return challenge


class OciRoutes:
    def __init__(self, plain_http: bool=False):
        self.scheme = 'http' if plain_http else 'https'

    def base_url(self, image_reference: image_ref_type) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        return f'{self.scheme}://{image_reference.netloc}/v2/'

    def _repository_url(self, image_reference: image_ref_type, *parts: str) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        return ocicp.util.urljoin(
            self.base_url(image_reference),
            image_reference.name,
            *parts,
        )

    def manifest_url(self, image_reference: image_ref_type) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        if not (reference := image_reference.reference):
            raise ValueError(f'{image_reference=} has neither tag nor digest')

        return self._repository_url(image_reference, 'manifests', reference)

    def blob_url(self, image_reference: image_ref_type, digest: str) -> str:
        return self._repository_url(image_reference, 'blobs', digest)

    def uploads_url(self, image_reference: image_ref_type) -> str:
        return self._repository_url(image_reference, 'blobs', 'uploads') + '/'

    def referrers_url(self, image_reference: image_ref_type, digest: str) -> str:
        return self._repository_url(image_reference, 'referrers', digest)


def _scope(image_reference: om.OciImageReference, push: bool=False) -> str:
    actions = 'pull,push' if push else 'pull'
    return f'repository:{image_reference.name}:{actions}'


def _privileges(scope: str) -> oa.Privileges:
    if 'push' in scope.rsplit(':', 1)[-1]:
        return oa.Privileges.READWRITE
    return oa.Privileges.READONLY


class Client:
    def __init__(
        self,
        credentials_lookup: oa.credentials_lookup,
        routes: OciRoutes=None,
        disable_tls_validation: bool=False,
        timeout_seconds: int=None,
        session: requests.Session=None,
    ):
        self.credentials_lookup = credentials_lookup
        self.routes = routes or OciRoutes()
        self.disable_tls_validation = disable_tls_validation
        self.timeout_seconds = int(timeout_seconds) if timeout_seconds else None
        self.session = session or requests.Session()
        self.token_cache = OauthTokenCache()

    def _credentials(
        self,
        image_reference: om.OciImageReference,
        scope: str,
    ) -> oa.OciBasicAuthCredentials | None:
        return self.credentials_lookup(
            image_reference=str(image_reference),
            privileges=_privileges(scope),
            absent_ok=True,
        )

    def _probe_auth_method(self, image_reference: om.OciImageReference):
        res = self.session.get(
            url=self.routes.base_url(image_reference),
            verify=not self.disable_tls_validation,
            timeout=self.timeout_seconds,
        )

        if not (challenge_header := res.headers.get('www-authenticate')):
            # registry does not ask for anything specific - basic-auth (or anonymous) it is
            return AuthMethod.BASIC, None

        challenge = www_authenticate.parse(challenge_header)
        if 'bearer' in challenge:
            return AuthMethod.BEARER, dict(challenge['bearer'])
        if 'basic' in challenge:
            return AuthMethod.BASIC, None

        raise NotImplementedError(f'unsupported auth-challenge: {challenge_header=}')

    def _fetch_token(
        self,
        image_reference: om.OciImageReference,
        scope: str,
        challenge: dict,
    ) -> OauthToken:
        query = {'scope': scope}
        if service := challenge.get('service'):
            query['service'] = service
        url = challenge['realm'] + '?' + urllib.parse.urlencode(query)

        if credentials := self._credentials(image_reference=image_reference, scope=scope):
            auth = requests.auth.HTTPBasicAuth(
                username=credentials.username,
                password=credentials.password,
            )
        else:
            logger.info(f'no credentials for {image_reference.netloc} - requesting anonymous token')
            auth = None

        res = self.session.get(
            url=url,
            auth=auth,
            verify=not self.disable_tls_validation,
            timeout=self.timeout_seconds,
        )
        if not res.ok:
            logger.warning(f'token-request failed: {url=} {res.status_code=} {res.reason=}')
        res.raise_for_status()

        raw = res.json()
        # docker-hub (amongst others) returns `access_token` instead of `token`
        if not (token := raw.get('token') or raw.get('access_token')):
            raise ValueError(f'token-service did not return a token: {url=}')

        token = dacite.from_dict(
            data_class=OauthToken,
            data={
                **raw,
                'token': token,
                'scope': scope,
                'netloc': image_reference.netloc,
            },
        )
        self.token_cache.set_token(token)

        return token

    def _authenticate(
        self,
        image_reference: om.OciImageReference,
        scope: str,
    ) -> OauthToken | None:
        '''
        returns the bearer-token to use for the given scope, or None if basic-auth is to be used
        '''
        if not (auth_method := self.token_cache.auth_method(image_reference)):
            auth_method, challenge = self._probe_auth_method(image_reference)
            self.token_cache.set_auth_method(image_reference, auth_method, challenge)

        if auth_method is AuthMethod.BASIC:
            return None

        if token := self.token_cache.token(scope=scope, netloc=image_reference.netloc):
            return token

        return self._fetch_token(
            image_reference=image_reference,
            scope=scope,
            challenge=self.token_cache.challenge(image_reference),
        )

    def _request(
        self,
        method: str,
        url: str,
        image_reference: image_ref_type,
        push: bool=False,
        headers: dict=None,
        raise_for_status: bool=True,
        warn_if_not_ok: bool=True,
        **kwargs,
    ) -> requests.Response:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        scope = _scope(image_reference, push=push)

        headers = {'User-Agent': USER_AGENT, **(headers or {})}
        auth = None

        if token := self._authenticate(image_reference=image_reference, scope=scope):
            headers['Authorization'] = f'Bearer {token.token}'
        elif credentials := self._credentials(image_reference=image_reference, scope=scope):
            auth = (credentials.username, credentials.password)

        kwargs.setdefault('timeout', self.timeout_seconds)

        request_logger.debug(f'{method} {url}')

        res = self.session.request(
            method=method,
            url=url,
            auth=auth,
            headers=headers,
            verify=not self.disable_tls_validation,
            **kwargs,
        )

        if not res.ok and warn_if_not_ok:
            logger.warning(f'{method} {url} failed: {res.status_code=} {res.reason=}')
        if raise_for_status:
            res.raise_for_status()

        return res

    def manifest_raw(
        self,
        image_reference: image_ref_type,
        absent_ok: bool=False,
        accept: str=None,
    ) -> requests.Response | None:
        '''
        returns the response to a GET-request for the referenced manifest. If the manifest
        does not exist, returns None if `absent_ok` is truthy, otherwise raises
        `ocicp.model.OciImageNotFoundException`.
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        res = self._request(
            method='GET',
            url=self.routes.manifest_url(image_reference),
            image_reference=image_reference,
            headers={'Accept': accept or om.MimeTypes.any_manifest},
            raise_for_status=False,
            warn_if_not_ok=not absent_ok,
        )

        if res.status_code == 404:
            if absent_ok:
                return None
            raise om.OciImageNotFoundException(f'{image_reference}: manifest not found')
        res.raise_for_status()

        return res

    def manifest(
        self,
        image_reference: image_ref_type,
        absent_ok: bool=False,
        accept: str=None,
    ) -> om.Manifest | None:
        res = self.manifest_raw(
            image_reference=image_reference,
            absent_ok=absent_ok,
            accept=accept,
        )
        if res is None:
            return None

        media_type = res.headers.get('Content-Type', '').split(';')[0].strip()
        return om.as_manifest(manifest=res.content, media_type=media_type or None)

    def head_manifest(
        self,
        image_reference: image_ref_type,
        absent_ok: bool=False,
        accept: str=None,
    ) -> om.Descriptor | None:
        '''
        returns a descriptor built from the response-headers of a HEAD-request for the
        referenced manifest. The digest is None if the registry omits `Docker-Content-Digest`
        (which is allowed by the distribution-spec).
        '''
        res = self._request(
            method='HEAD',
            url=self.routes.manifest_url(image_reference),
            image_reference=image_reference,
            headers={'Accept': accept or om.MimeTypes.any_manifest},
            raise_for_status=False,
            warn_if_not_ok=not absent_ok,
        )

        if res.status_code == 404 and absent_ok:
            return None
        res.raise_for_status()

        size = res.headers.get('Content-Length')

        return om.Descriptor(
            mediaType=res.headers['Content-Type'].split(';')[0].strip(),
            digest=res.headers.get('Docker-Content-Digest'),
            size=int(size) if size else None,
        )

    def put_manifest(
        self,
        image_reference: image_ref_type,
        manifest: bytes,
        media_type: str=None,
    ) -> requests.Response:
        if not media_type:
            media_type = json.loads(manifest).get('mediaType', om.OCI_MANIFEST_SCHEMA_V2_MIME)

        res = self._request(
            method='PUT',
            url=self.routes.manifest_url(image_reference),
            image_reference=image_reference,
            push=True,
            headers={'Content-Type': media_type},
            data=manifest,
            raise_for_status=False,
        )

        if not res.ok:
            logger.warning(f'manifest was rejected: {image_reference=} {res.content=}')
        res.raise_for_status()

        return res

    def blob(
        self,
        image_reference: image_ref_type,
        digest: str,
        stream: bool=True,
        absent_ok: bool=False,
    ) -> requests.Response | None:
        res = self._request(
            method='GET',
            url=self.routes.blob_url(image_reference, digest),
            image_reference=image_reference,
            stream=stream,
            timeout=None, # blobs may be large
            raise_for_status=False,
            warn_if_not_ok=not absent_ok,
        )

        if res.status_code == 404 and absent_ok:
            return None
        res.raise_for_status()

        return res

    def head_blob(
        self,
        image_reference: image_ref_type,
        digest: str,
        absent_ok: bool=True,
    ) -> requests.Response:
        '''
        returns the response to a HEAD-request for the given blob. Callers should check `ok`.
        Unless `absent_ok` is falsy, HTTP 404 is not raised.
        '''
        res = self._request(
            method='HEAD',
            url=self.routes.blob_url(image_reference, digest),
            image_reference=image_reference,
            raise_for_status=False,
            warn_if_not_ok=not absent_ok,
        )

        if not (res.status_code == 404 and absent_ok):
            res.raise_for_status()

        return res

    def referrers(
        self,
        image_reference: image_ref_type,
        digest: str,
    ) -> om.OciImageIndex | None:
        '''
        returns an index of all manifests declaring `digest` as their subject, or None if the
        registry does not support the referrers-API (signalled by HTTP 404).
        '''
        res = self._request(
            method='GET',
            url=self.routes.referrers_url(image_reference, digest),
            image_reference=image_reference,
            headers={'Accept': om.OCI_IMAGE_INDEX_MIME},
            raise_for_status=False,
            warn_if_not_ok=False,
        )

        if res.status_code == 404:
            logger.debug(f'{image_reference=}: referrers-API not supported')
            return None
        res.raise_for_status()

        return om.as_manifest(manifest=res.content, media_type=om.OCI_IMAGE_INDEX_MIME)

    def put_blob(
        self,
        image_reference: image_ref_type,
        digest: str,
        octets_count: int,
        data: bytes | typing.BinaryIO | typing.Iterator[bytes],
    ):
        '''
        uploads the given blob (unless it already exists). Iterators are joined in memory, or
        spooled to a temporary file if `octets_count` exceeds `MAX_IN_MEMORY_BLOB_OCTETS`.
        '''
        if self.head_blob(image_reference=image_reference, digest=digest).ok:
            logger.info(f'{digest=} already exists - skipping upload')
            return

        if isinstance(data, bytes) or hasattr(data, 'read'):
            return self._upload_blob(image_reference, digest, octets_count, data)

        if octets_count <= MAX_IN_MEMORY_BLOB_OCTETS:
            return self._upload_blob(image_reference, digest, octets_count, b''.join(data))

        with tempfile.TemporaryFile() as f:
            for chunk in data:
                f.write(chunk)
            f.seek(0)

            return self._upload_blob(image_reference, digest, octets_count, f)

    def _upload_blob(
        self,
        image_reference: image_ref_type,
        digest: str,
        octets_count: int,
        data: bytes | typing.BinaryIO,
    ) -> requests.Response:
        # POST to initiate, then monolithic PUT (single-POST uploads are not supported by all
        # registries, e.g. docker-hub)
        res = self._request(
            method='POST',
            url=self.routes.uploads_url(image_reference),
            image_reference=image_reference,
            push=True,
        )

        if not (location := res.headers.get('Location')):
            raise ValueError(f'registry did not return upload-location for {digest=}')

        # location may be relative
        upload_url = urllib.parse.urljoin(res.url, location)
        separator = '&' if '?' in upload_url else '?'
        upload_url += separator + urllib.parse.urlencode({'digest': digest})

        res = self._request(
            method='PUT',
            url=upload_url,
            image_reference=image_reference,
            push=True,
            headers={
                'Content-Type': 'application/octet-stream',
                'Content-Length': str(octets_count),
            },
            data=data,
        )

        if res.status_code != 201:
            logger.warning(f'{digest=}: unexpected {res.status_code=} for upload - may have failed')

        return res
