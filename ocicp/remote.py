'''
repository-handles for remote OCI registries, as consumed by `ocicp.graph`

A "target" (source or destination of a graph-copy) is any object offering the methods of
`Repository` (resolve, exists, fetch, push, tag, predecessors), and a `reference` attribute.
'''

import collections.abc
import hashlib
import logging
import typing

import ocicp.client as oc
import ocicp.model as om

logger = logging.getLogger(__name__)


def referrers_tag(digest: str) -> str:
    '''
    returns the tag used by the "referrers tag schema" (fallback for registries not supporting
    the referrers-API): `<algorithm>-<hexdigest>`
    '''
    algorithm, hexdigest = digest.split(':', 1)
    return f'{algorithm}-{hexdigest}'


class Repository:
    def __init__(
        self,
        reference: typing.Union[str, om.OciImageReference],
        client: oc.Client,
        chunk_size: int=1024 * 1024,
    ):
        self.reference = om.OciImageReference.to_image_ref(reference).validate()
        self.client = client
        self.chunk_size = chunk_size

    def _ref(self, reference: str) -> om.OciImageReference:
        return self.reference.with_tag(reference)

    def __str__(self):
        return self.reference.ref_without_tag

    def __repr__(self):
        return f'Repository({self.reference.ref_without_tag})'

    def resolve(self, reference: str) -> om.Descriptor:
        image_reference = self._ref(reference)

        try:
            descriptor = self.client.head_manifest(
                image_reference=image_reference,
                absent_ok=True,
            )
            if not descriptor:
                raise om.ResolutionFailure(f'{image_reference}: not found')

            if descriptor.digest and descriptor.size:
                return descriptor

            # digest-header is optional; fall back to calculating it from retrieved manifest
            logger.debug(f'{image_reference=} - no digest in HEAD-response, will fetch manifest')
            res = self.client.manifest_raw(image_reference=image_reference)
        except om.OciCopyError:
            raise
        except Exception as e:
            raise om.ResolutionFailure(f'{image_reference}: failed to resolve: {e}') from e

        return om.Descriptor(
            mediaType=descriptor.mediaType,
            digest=f'sha256:{hashlib.sha256(res.content).hexdigest()}',
            size=len(res.content),
        )

    def exists(self, descriptor: om.Descriptor) -> bool:
        if om.is_manifest(descriptor.mediaType):
            return bool(self.client.head_manifest(
                image_reference=self._ref(descriptor.digest),
                absent_ok=True,
            ))

        return self.client.head_blob(
            image_reference=self.reference,
            digest=descriptor.digest,
            absent_ok=True,
        ).ok

    def fetch(self, descriptor: om.Descriptor) -> collections.abc.Iterator[bytes]:
        if om.is_manifest(descriptor.mediaType):
            res = self.client.manifest_raw(
                image_reference=self._ref(descriptor.digest),
                accept=descriptor.mediaType,
            )
            return iter((res.content,))

        res = self.client.blob(
            image_reference=self.reference,
            digest=descriptor.digest,
            stream=True,
        )
        return res.iter_content(chunk_size=self.chunk_size)

    def push(
        self,
        descriptor: om.Descriptor,
        content: bytes | collections.abc.Iterator[bytes],
    ):
        if om.is_manifest(descriptor.mediaType):
            if not isinstance(content, bytes):
                content = b''.join(content)
            self.client.put_manifest(
                image_reference=self._ref(descriptor.digest),
                manifest=content,
                media_type=descriptor.mediaType,
            )
            return

        self.client.put_blob(
            image_reference=self.reference,
            digest=descriptor.digest,
            octets_count=descriptor.size,
            data=content,
        )

    def tag(self, descriptor: om.Descriptor, reference: str):
        if reference == descriptor.digest:
            return # already addressable by digest

        res = self.client.manifest_raw(
            image_reference=self._ref(descriptor.digest),
            accept=descriptor.mediaType,
        )
        self.client.put_manifest(
            image_reference=self._ref(reference),
            manifest=res.content,
            media_type=descriptor.mediaType,
        )

    def predecessors(self, descriptor: om.Descriptor) -> list[om.Descriptor]:
        '''
        returns the manifests referring to the given descriptor as their subject
        '''
        index = self.client.referrers(
            image_reference=self.reference,
            digest=descriptor.digest,
        )
        if index is None:
            index = self.client.manifest(
                image_reference=self._ref(referrers_tag(descriptor.digest)),
                absent_ok=True,
                accept=om.OCI_IMAGE_INDEX_MIME,
            )
        if index is None:
            return []

        return list(index.manifests)
