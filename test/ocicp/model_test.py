import hashlib
import json

import pytest

import ocicp.model as om

example_digest = 'sha256:' + hashlib.sha256(b'net-monitor').hexdigest()


def test_reference():
    assert om.OciImageReference('localhost:5000/net-monitor:v1').reference == 'v1'
    assert om.OciImageReference(
        f'localhost:5000/net-monitor@{example_digest}'
    ).reference == example_digest

    # no tag, no digest
    assert om.OciImageReference('localhost:5000/net-monitor').reference == ''
    assert om.OciImageReference('net-monitor').reference == ''

    # digest wins over symbolic tag
    assert om.OciImageReference(
        f'localhost:5000/net-monitor:v1@{example_digest}'
    ).reference == example_digest


def test_netloc_and_name():
    ref = om.OciImageReference('localhost:5000/team/net-monitor:v1')
    assert ref.netloc == 'localhost:5000'
    assert ref.name == 'team/net-monitor'
    assert ref.ref_without_tag == 'localhost:5000/team/net-monitor'

    ref = om.OciImageReference('net-monitor:v1')
    assert ref.netloc == 'registry-1.docker.io'
    assert ref.name == 'library/net-monitor'


def test_original_image_reference_is_preserved():
    ref = om.OciImageReference('net-monitor:v1')

    assert ref.original_image_reference == 'net-monitor:v1'
    assert str(ref) == 'registry-1.docker.io/library/net-monitor:v1'


def test_derived_references_are_normalised():
    ref = om.OciImageReference('net-monitor:v1')

    assert om.OciImageReference.to_image_ref(ref) is ref
    assert str(om.OciImageReference.to_image_ref('net-monitor:v1')) == str(ref)
    assert str(ref.with_tag('v2')) == 'registry-1.docker.io/library/net-monitor:v2'
    assert ref.with_tag('v2').original_image_reference == \
        'registry-1.docker.io/library/net-monitor:v2'


def test_tag_type():
    assert om.OciImageReference('example.org/repo:v1').tag_type is om.OciTagType.SYMBOLIC
    assert om.OciImageReference(
        f'example.org/repo@{example_digest}'
    ).tag_type is om.OciTagType.DIGEST
    assert om.OciImageReference('example.org/repo').tag_type is om.OciTagType.NO_TAG


def test_with_tag():
    ref = om.OciImageReference('example.org/repo:v1')

    assert ref.with_tag('v2').original_image_reference == 'example.org/repo:v2'
    assert ref.with_tag(example_digest).original_image_reference == \
        f'example.org/repo@{example_digest}'

    ref = om.OciImageReference(f'example.org/repo@{example_digest}')
    assert ref.with_tag('v2').original_image_reference == 'example.org/repo:v2'


@pytest.mark.parametrize(
    'image_reference',
    [
        'example.org/repo',
        'example.org/repo:v1',
        'example.org:5000/repo:v1.2.3_rc-1',
        f'example.org/repo@{example_digest}',
        f'example.org/repo:v1@{example_digest}',
        'net-monitor:v1',
    ],
)
def test_validate(image_reference):
    ref = om.OciImageReference(image_reference)
    assert ref.validate() is ref


@pytest.mark.parametrize(
    'image_reference',
    [
        'example.org/repo:-v1',
        'example.org/repo:v1!',
        'example.org/repo@sha256:abc',
        'example.org/repo@sha256:' + 'A' * 64,
        'example.org/repo@not-a-digest',
    ],
)
def test_validate_rejects_malformed_references(image_reference):
    with pytest.raises(om.InvalidReference) as excinfo:
        om.OciImageReference(image_reference).validate()

    assert isinstance(excinfo.value, ValueError)
    assert image_reference in str(excinfo.value)


def test_descriptor_title():
    descriptor = om.Descriptor(
        mediaType='application/octet-stream',
        digest=example_digest,
        size=11,
    )
    assert descriptor.title is None

    descriptor = om.Descriptor(
        mediaType='application/octet-stream',
        digest=example_digest,
        size=11,
        annotations={om.ANNOTATION_TITLE: 'net-monitor.tar'},
    )
    assert descriptor.title == 'net-monitor.tar'


def test_descriptor_as_dict_omits_absent_fields():
    descriptor = om.Descriptor(
        mediaType='application/octet-stream',
        digest=example_digest,
        size=11,
    )

    assert descriptor.as_dict() == {
        'mediaType': 'application/octet-stream',
        'digest': example_digest,
        'size': 11,
    }


def test_descriptor_eq():
    kwargs = {
        'mediaType': 'application/octet-stream',
        'digest': example_digest,
        'size': 11,
    }

    assert om.Descriptor(**kwargs) == om.Descriptor(**kwargs, annotations={})
    assert hash(om.Descriptor(**kwargs)) == hash(om.Descriptor(**kwargs, annotations={}))
    assert om.Descriptor(**kwargs) != om.Descriptor(**kwargs, annotations={'k': 'v'})
    assert om.Descriptor(**kwargs) != om.Descriptor(**{**kwargs, 'size': 12})


def _descriptor_dict(media_type: str, content: bytes) -> dict:
    return {
        'mediaType': media_type,
        'digest': 'sha256:' + hashlib.sha256(content).hexdigest(),
        'size': len(content),
    }


def test_successors_of_image_manifest():
    subject = _descriptor_dict(om.OCI_MANIFEST_SCHEMA_V2_MIME, b'subject')
    config = _descriptor_dict(om.OCI_EMPTY_MIME, b'{}')
    layer = _descriptor_dict('application/vnd.oci.image.layer.v1.tar', b'layer')

    manifest = json.dumps({
        'schemaVersion': 2,
        'mediaType': om.OCI_MANIFEST_SCHEMA_V2_MIME,
        'config': config,
        'layers': [layer],
        'subject': subject,
    }).encode('utf-8')
    descriptor = om.Descriptor(**_descriptor_dict(om.OCI_MANIFEST_SCHEMA_V2_MIME, manifest))

    successors = om.successors(descriptor, manifest)

    assert [s.digest for s in successors] == [
        subject['digest'],
        config['digest'],
        layer['digest'],
    ]


def test_successors_of_artifact_manifest():
    blob = _descriptor_dict('application/octet-stream', b'blob')

    manifest = json.dumps({
        'mediaType': om.OCI_ARTIFACT_MANIFEST_MIME,
        'artifactType': 'application/vnd.acme.sbom',
        'blobs': [blob],
    }).encode('utf-8')
    descriptor = om.Descriptor(**_descriptor_dict(om.OCI_ARTIFACT_MANIFEST_MIME, manifest))

    assert [s.digest for s in om.successors(descriptor, manifest)] == [blob['digest']]


def test_successors_of_index():
    image_a = _descriptor_dict(om.OCI_MANIFEST_SCHEMA_V2_MIME, b'a')
    image_b = _descriptor_dict(om.OCI_MANIFEST_SCHEMA_V2_MIME, b'b')

    # media type of descriptor takes precedence over the one in the manifest (which is absent)
    manifest = json.dumps({
        'schemaVersion': 2,
        'manifests': [image_a, image_b],
    }).encode('utf-8')
    descriptor = om.Descriptor(**_descriptor_dict(om.OCI_IMAGE_INDEX_MIME, manifest))

    assert [s.digest for s in om.successors(descriptor, manifest)] == [
        image_a['digest'],
        image_b['digest'],
    ]


def test_successors_of_blob():
    descriptor = om.Descriptor(**_descriptor_dict('application/octet-stream', b'blob'))

    assert om.successors(descriptor, b'blob') == []


def test_as_manifest_rejects_unknown_media_type():
    with pytest.raises(ValueError):
        om.as_manifest({'mediaType': 'text/plain'})


def test_is_manifest():
    assert om.is_manifest(om.OCI_MANIFEST_SCHEMA_V2_MIME)
    assert om.is_manifest(om.DOCKER_MANIFEST_LIST_MIME)
    assert not om.is_manifest(om.OCI_EMPTY_MIME)
