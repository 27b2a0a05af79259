import collections.abc
import dataclasses
import enum
import json
import re
import typing

import dacite

import ocicp.util

OCI_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.oci.image.manifest.v1+json'
OCI_IMAGE_INDEX_MIME = 'application/vnd.oci.image.index.v1+json'
OCI_ARTIFACT_MANIFEST_MIME = 'application/vnd.oci.artifact.manifest.v1+json'
OCI_EMPTY_MIME = 'application/vnd.oci.empty.v1+json'

DOCKER_MANIFEST_LIST_MIME = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.docker.distribution.manifest.v2+json'

ANNOTATION_TITLE = 'org.opencontainers.image.title'


class MimeTypes:
    '''
    predefined, well-known mimetypes, handy to be used as `accept` header

    single_image: force single-image
    multiarch: force multi-arch (image-list)
    any_manifest: everything that may be the root of an artifact graph

    note: not all registries honour `accept` header
    '''
    single_image = ', '.join((OCI_MANIFEST_SCHEMA_V2_MIME, DOCKER_MANIFEST_SCHEMA_V2_MIME))
    multiarch = ', '.join((OCI_IMAGE_INDEX_MIME, DOCKER_MANIFEST_LIST_MIME))
    any_manifest = ', '.join((multiarch, single_image, OCI_ARTIFACT_MANIFEST_MIME))


MANIFEST_MIMES = (
    OCI_MANIFEST_SCHEMA_V2_MIME,
    OCI_IMAGE_INDEX_MIME,
    OCI_ARTIFACT_MANIFEST_MIME,
    DOCKER_MANIFEST_LIST_MIME,
    DOCKER_MANIFEST_SCHEMA_V2_MIME,
)


def is_manifest(media_type: str) -> bool:
    return media_type in MANIFEST_MIMES


class OciCopyError(Exception):
    '''
    base class for all errors that abort a copy
    '''
    pass


class InvalidReference(OciCopyError, ValueError):
    def __init__(self, reference: str, reason: str=None):
        self.reference = reference
        msg = f'{reference}: invalid image reference, expecting <name:tag|name@digest>'
        if reason:
            msg += f' ({reason})'
        super().__init__(msg)


class ResolutionFailure(OciCopyError):
    pass


class TransferFailure(OciCopyError):
    pass


class CallbackFailure(OciCopyError):
    pass


class CopyCancelled(OciCopyError):
    pass


class OciImageNotFoundException(Exception):
    pass


class OciTagType(enum.Enum):
    SYMBOLIC = 'symbolic'
    DIGEST = 'digest'
    NO_TAG = 'no_tag'


_tag_pattern = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
_digest_pattern = re.compile(r'^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$')
_sha256_pattern = re.compile(r'^sha256:[a-f0-9]{64}$')


class OciImageReference:
    '''
    a reference to an OCI artifact: `[<registry>/]<repository>[:<tag>][@<digest>]`

    references w/o registry-host are interpreted the way docker-cli does (see
    `ocicp.util.normalise_image_reference`). The originally passed-in string is retained, as
    it is the form reported back to users.
    '''
    @staticmethod
    def to_image_ref(
        image_reference: typing.Union[str, 'OciImageReference'],
    ) -> 'OciImageReference':
        if isinstance(image_reference, OciImageReference):
            return image_reference
        return OciImageReference(image_reference=image_reference)

    def __init__(
        self,
        image_reference: typing.Union[str, 'OciImageReference'],
    ):
        if isinstance(image_reference, OciImageReference):
            image_reference = image_reference.original_image_reference
        elif not isinstance(image_reference, str):
            raise ValueError(image_reference)

        if not image_reference:
            raise InvalidReference(image_reference, reason='empty reference')

        self._orig_image_reference = image_reference

        normalised = ocicp.util.normalise_image_reference(image_reference)
        self._netloc, _, path = normalised.partition('/')

        path, at, digest = path.partition('@')
        self._digest = digest if at else None

        # the host was split off already, so any colon separates repository and tag
        name, colon, tag = path.rpartition(':')
        if colon:
            self._name, self._tag = name, tag
        else:
            self._name, self._tag = path, None

    @property
    def original_image_reference(self) -> str:
        return self._orig_image_reference

    @property
    def normalised_image_reference(self) -> str:
        return ocicp.util.normalise_image_reference(self._orig_image_reference)

    @property
    def netloc(self) -> str:
        return self._netloc

    @property
    def name(self) -> str:
        '''
        the repository name (w/o registry-host, tag and digest), e.g. `library/alpine`
        '''
        return self._name

    @property
    def ref_without_tag(self) -> str:
        return f'{self._netloc}/{self._name}'

    @property
    def tag_type(self) -> OciTagType:
        if self._digest is not None:
            return OciTagType.DIGEST
        if self._tag is not None:
            return OciTagType.SYMBOLIC
        return OciTagType.NO_TAG

    @property
    def has_tag(self) -> bool:
        return self.tag_type is not OciTagType.NO_TAG

    @property
    def has_digest_tag(self) -> bool:
        return self.tag_type is OciTagType.DIGEST

    @property
    def tag(self) -> str:
        '''
        the digest, if present, otherwise the symbolic tag. Raises ValueError if there is neither.
        '''
        if self._digest is not None:
            return self._digest
        if self._tag is not None:
            return self._tag
        raise ValueError(f'no tag found for {self}')

    @property
    def reference(self) -> str:
        '''
        the tag or digest part of this reference; empty string if there is none.
        '''
        return self.tag if self.has_tag else ''

    def validate(self) -> 'OciImageReference':
        '''
        raises InvalidReference if tag or digest are malformed. References w/o tag are
        considered valid.
        '''
        def invalid(reason: str):
            return InvalidReference(self._orig_image_reference, reason=reason)

        if not self._name:
            raise invalid('missing repository')

        if self._tag is not None and not _tag_pattern.match(self._tag):
            raise invalid(f'invalid tag {self._tag!r}')

        if (digest := self._digest) is not None:
            if not _digest_pattern.match(digest):
                raise invalid(f'invalid digest {digest!r}')
            if digest.startswith('sha256:') and not _sha256_pattern.match(digest):
                raise invalid(f'invalid sha256-digest {digest!r}')

        return self

    def with_tag(self, tag: str) -> 'OciImageReference':
        '''
        returns a copy of this reference w/ the given symbolic tag or digest (recognised by the
        contained colon, which is not allowed in symbolic tags).
        '''
        separator = '@' if ':' in tag else ':'

        return OciImageReference(
            image_reference=f'{self.ref_without_tag}{separator}{tag}',
        )

    def __str__(self) -> str:
        return self.normalised_image_reference

    def __repr__(self) -> str:
        return f'OciImageReference({str(self)})'

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciImageReference):
            return False
        return self.normalised_image_reference == other.normalised_image_reference

    def __hash__(self):
        return hash(self.normalised_image_reference)


@dataclasses.dataclass(frozen=True, kw_only=True)
class Descriptor:
    '''
    https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    '''
    mediaType: str
    digest: str
    size: int
    annotations: dict[str, str] | None = None
    artifactType: str | None = None
    urls: list[str] | None = None
    platform: dict | None = None

    @property
    def title(self) -> str | None:
        if not self.annotations:
            return None
        return self.annotations.get(ANNOTATION_TITLE)

    def as_dict(self) -> dict:
        raw = dataclasses.asdict(self)
        # fields that are None should not be included in the output
        raw = {k:v for k,v in raw.items() if v is not None}
        return raw

    def _identity(self) -> tuple:
        # absent and empty annotations are equivalent; other optional fields are ignored
        annotations = tuple(sorted(self.annotations.items())) if self.annotations else ()
        return self.digest, self.mediaType, self.size, annotations

    def __hash__(self):
        return hash(self._identity())

    def __eq__(self, other) -> bool:
        if not isinstance(other, Descriptor):
            return False
        return self._identity() == other._identity()


@dataclasses.dataclass
class OciImageManifest:
    config: Descriptor
    layers: collections.abc.Sequence[Descriptor] = ()
    mediaType: str = OCI_MANIFEST_SCHEMA_V2_MIME
    schemaVersion: int = 2
    artifactType: str | None = None
    subject: Descriptor | None = None
    annotations: dict = dataclasses.field(default_factory=dict)

    def blobs(self) -> collections.abc.Generator[Descriptor, None, None]:
        yield self.config
        yield from self.layers


@dataclasses.dataclass
class OciArtifactManifest:
    '''
    application/vnd.oci.artifact.manifest.v1+json (only found in image-spec release-candidates,
    but still served by some registries)
    '''
    artifactType: str | None = None
    blobs: collections.abc.Sequence[Descriptor] = ()
    mediaType: str = OCI_ARTIFACT_MANIFEST_MIME
    subject: Descriptor | None = None
    annotations: dict = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class OciImageIndex:
    '''Covers both Docker Manifest List
        (https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list)
        and OCI Image Index
        (https://github.com/opencontainers/image-spec/blob/main/image-index.md)
    '''
    manifests: list[Descriptor] = dataclasses.field(default_factory=list)
    mediaType: str = OCI_IMAGE_INDEX_MIME
    schemaVersion: int = 2
    artifactType: str | None = None
    subject: Descriptor | None = None
    annotations: dict = dataclasses.field(default_factory=dict)


Manifest = OciImageManifest | OciArtifactManifest | OciImageIndex


def as_manifest(
    manifest: str | bytes | dict,
    media_type: str=None,
) -> Manifest:
    '''
    returns a deserialised equivalent of the passed-in manifest. The media type is read from
    the manifest itself, unless passed explicitly (e.g. from a descriptor), which takes
    precedence.
    '''
    if isinstance(manifest, (str, bytes)):
        manifest = json.loads(manifest)

    if not media_type:
        media_type = manifest.get('mediaType')

    if media_type in (
        DOCKER_MANIFEST_LIST_MIME,
        OCI_IMAGE_INDEX_MIME,
    ):
        data_class = OciImageIndex
    elif media_type in (
        DOCKER_MANIFEST_SCHEMA_V2_MIME,
        OCI_MANIFEST_SCHEMA_V2_MIME,
    ):
        data_class = OciImageManifest
    elif media_type == OCI_ARTIFACT_MANIFEST_MIME:
        data_class = OciArtifactManifest
    else:
        raise ValueError(f'unknown manifest {media_type=}')

    return dacite.from_dict(
        data_class=data_class,
        data={**manifest, 'mediaType': media_type},
    )


def successors(
    descriptor: Descriptor,
    content: bytes,
) -> list[Descriptor]:
    '''
    returns the descriptors the node described by `descriptor` links to, in the order
    subject, config, layers (for image manifests), subject, blobs (for artifact manifests), or
    subject, manifests (for image indices). Nodes that are not manifests are leaves.
    '''
    if not is_manifest(descriptor.mediaType):
        return []

    manifest = as_manifest(content, media_type=descriptor.mediaType)

    nodes = []
    if manifest.subject:
        nodes.append(manifest.subject)

    if isinstance(manifest, OciImageManifest):
        nodes.extend(manifest.blobs())
    elif isinstance(manifest, OciArtifactManifest):
        nodes.extend(manifest.blobs)
    elif isinstance(manifest, OciImageIndex):
        nodes.extend(manifest.manifests)
    else:
        raise RuntimeError(f'this is a bug: {manifest=}')

    return nodes
