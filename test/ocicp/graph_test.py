import json
import threading
import unittest.mock

import pytest
import requests

import ocicp.graph as examinee
import ocicp.model as om

from test._test_utils import (
    MemoryTarget,
    add_image,
    descriptor_for,
)


def _layer(content: bytes, title: str) -> om.Descriptor:
    return descriptor_for(
        content,
        'application/vnd.oci.image.layer.v1.tar',
        annotations={om.ANNOTATION_TITLE: title},
    )


def test_copy_graph_pushes_successors_first(src, dst):
    image = add_image(src, layers={'a': b'layer-a', 'b': b'layer-b'})

    examinee.copy_graph(src, dst, image)

    assert set(dst.pushed) == set(src.contents)
    assert dst.pushed[-1] == image.digest
    assert dst.tags == {}


def test_copy_graph_index(src, dst):
    image_a = add_image(src, layers={'a': b'layer-a'})
    image_b = add_image(src, layers={'b': b'layer-b'})
    index = src.add(
        json.dumps({
            'schemaVersion': 2,
            'mediaType': om.OCI_IMAGE_INDEX_MIME,
            'manifests': [image_a.as_dict(), image_b.as_dict()],
        }).encode('utf-8'),
        om.OCI_IMAGE_INDEX_MIME,
    )

    examinee.copy_graph(src, dst, index)

    assert dst.pushed[-1] == index.digest
    assert dst.pushed.index(image_a.digest) < dst.pushed.index(index.digest)
    assert dst.pushed.index(image_b.digest) < dst.pushed.index(index.digest)
    assert set(dst.pushed) == set(src.contents)


def test_copy_graph_skips_existing_nodes(src, dst):
    image = add_image(src, layers={'a': b'layer-a', 'b': b'layer-b'})
    existing = dst.add(b'layer-a', 'application/vnd.oci.image.layer.v1.tar')

    on_copy_skipped = unittest.mock.MagicMock()
    options = examinee.CopyGraphOptions(on_copy_skipped=on_copy_skipped)

    examinee.copy_graph(src, dst, image, options)

    assert not existing.digest in dst.pushed
    assert dst.pushed[-1] == image.digest
    on_copy_skipped.assert_called_once_with(_layer(b'layer-a', 'a'))


def test_copy_graph_does_not_descend_into_existing_manifests(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})
    dst.add(src.contents[image.digest], image.mediaType)

    fetch = unittest.mock.MagicMock(wraps=src.fetch)
    with unittest.mock.patch.object(src, 'fetch', fetch):
        examinee.copy_graph(src, dst, image)

    assert dst.pushed == []
    fetch.assert_not_called()


def test_copy_graph_callbacks(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    pre_copy = unittest.mock.MagicMock()
    post_copy = unittest.mock.MagicMock()
    options = examinee.CopyGraphOptions(pre_copy=pre_copy, post_copy=post_copy)

    examinee.copy_graph(src, dst, image, options)

    pre_copied = [c.args[0].digest for c in pre_copy.call_args_list]
    post_copied = [c.args[0].digest for c in post_copy.call_args_list]

    assert sorted(pre_copied) == sorted(dst.pushed)
    assert sorted(post_copied) == sorted(dst.pushed)
    assert pre_copied[-1] == post_copied[-1] == image.digest


def test_copy_graph_find_successors(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    options = examinee.CopyGraphOptions(find_successors=lambda descriptor, content: [])
    examinee.copy_graph(src, dst, image, options)

    assert dst.pushed == [image.digest]


def test_copy_graph_callback_failure(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    def pre_copy(descriptor):
        raise OSError('disk full')

    options = examinee.CopyGraphOptions(pre_copy=pre_copy)

    with pytest.raises(om.CallbackFailure) as excinfo:
        examinee.copy_graph(src, dst, image, options)

    assert isinstance(excinfo.value.__cause__, OSError)
    assert not image.digest in dst.pushed


def test_copy_graph_copy_errors_from_callbacks_are_not_wrapped(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    def pre_copy(descriptor):
        raise om.CopyCancelled('stop')

    with pytest.raises(om.CopyCancelled):
        examinee.copy_graph(src, dst, image, examinee.CopyGraphOptions(pre_copy=pre_copy))


def test_copy_graph_cancelled(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(om.CopyCancelled):
        examinee.copy_graph(src, dst, image, cancel=cancel)

    assert dst.pushed == []


def test_copy_graph_cancelled_while_copying(src, dst):
    image = add_image(src, layers={'a': b'layer-a', 'b': b'layer-b'})
    cancel = threading.Event()

    def post_copy(descriptor):
        cancel.set()

    options = examinee.CopyGraphOptions(post_copy=post_copy, concurrency=1)

    with pytest.raises(om.CopyCancelled):
        examinee.copy_graph(src, dst, image, options, cancel=cancel)

    assert len(dst.pushed) == 1
    assert not image.digest in dst.pushed


def test_copy_graph_wraps_request_errors(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    with unittest.mock.patch.object(
        dst,
        'push',
        side_effect=requests.exceptions.ConnectionError('connection refused'),
    ):
        with pytest.raises(om.TransferFailure):
            examinee.copy_graph(src, dst, image)


def test_copy_graph_wraps_non_http_errors(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    with unittest.mock.patch.object(
        dst,
        'push',
        side_effect=ValueError('registry did not return upload-location'),
    ):
        with pytest.raises(om.TransferFailure) as excinfo:
            examinee.copy_graph(src, dst, image)

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert 'upload-location' in str(excinfo.value)


def test_copy_graph_wraps_successor_errors(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    def find_successors(descriptor, content):
        raise ValueError(f'unknown manifest {descriptor.mediaType=}')

    with pytest.raises(om.TransferFailure):
        examinee.copy_graph(
            src,
            dst,
            image,
            examinee.CopyGraphOptions(find_successors=find_successors),
        )

    assert dst.pushed == []


def test_copy_graph_rejects_digest_mismatch(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})
    manifest = src.contents[image.digest]
    src.contents[image.digest] = manifest.replace(b'"layers"', b'"Layers"')

    with pytest.raises(om.TransferFailure):
        examinee.copy_graph(src, dst, image)

    assert dst.pushed == []


def test_copy_graph_rejects_oversized_manifests(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})

    options = examinee.CopyGraphOptions(max_metadata_bytes=image.size - 1)
    with pytest.raises(om.TransferFailure):
        examinee.copy_graph(src, dst, image, options)


def test_copy_graph_missing_blob(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})
    del src.contents[_layer(b'layer-a', 'a').digest]

    with pytest.raises(om.TransferFailure):
        examinee.copy_graph(src, dst, image)

    assert not image.digest in dst.pushed


def test_copy_tags_destination(src, dst):
    image = add_image(src, layers={'a': b'layer-a'}, tag='v1')

    root = examinee.copy(src, 'v1', dst, 'v2')

    assert root.digest == image.digest
    assert dst.tags == {'v2': image.digest}


def test_copy_defaults_dst_ref_to_src_ref(src, dst):
    image = add_image(src, layers={'a': b'layer-a'}, tag='v1')

    examinee.copy(src, 'v1', dst, '')

    assert dst.tags == {'v1': image.digest}


def test_copy_map_root(src, dst):
    image_a = add_image(src, layers={'a': b'layer-a'}, tag='v1')
    image_b = add_image(src, layers={'b': b'layer-b'})

    def map_root(target, root):
        assert target is src
        assert root.digest == image_a.digest
        return image_b

    root = examinee.copy(src, 'v1', dst, 'v1', examinee.CopyOptions(map_root=map_root))

    assert root.digest == image_b.digest
    assert dst.tags == {'v1': image_b.digest}
    assert not image_a.digest in dst.contents


def test_copy_wraps_tag_errors(src, dst):
    add_image(src, layers={'a': b'layer-a'}, tag='v1')

    with unittest.mock.patch.object(dst, 'tag', side_effect=KeyError('content-type')):
        with pytest.raises(om.TransferFailure):
            examinee.copy(src, 'v1', dst, 'v2')


def test_copy_unresolvable(src, dst):
    with pytest.raises(om.ResolutionFailure):
        examinee.copy(src, 'absent', dst, 'v1')


def test_find_roots(src):
    image = add_image(src, layers={'a': b'layer-a'})
    signature = add_image(src, layers={'sig': b'signature'}, subject=image)
    sbom = add_image(src, layers={'sbom': b'sbom'}, subject=image)
    sbom_signature = add_image(src, layers={'sig': b'sbom-signature'}, subject=sbom)

    roots = examinee.find_roots(src, image)

    assert {r.digest for r in roots} == {signature.digest, sbom_signature.digest}


def test_find_roots_without_predecessors(src):
    image = add_image(src, layers={'a': b'layer-a'})

    assert [r.digest for r in examinee.find_roots(src, image)] == [image.digest]


def test_find_roots_depth(src):
    image = add_image(src, layers={'a': b'layer-a'})
    sbom = add_image(src, layers={'sbom': b'sbom'}, subject=image)
    add_image(src, layers={'sig': b'sbom-signature'}, subject=sbom)

    options = examinee.ExtendedCopyGraphOptions(depth=1)
    roots = examinee.find_roots(src, image, options)

    assert [r.digest for r in roots] == [sbom.digest]


def test_find_roots_find_predecessors(src):
    image = add_image(src, layers={'a': b'layer-a'})
    add_image(src, layers={'sig': b'signature'}, subject=image)

    find_predecessors = unittest.mock.MagicMock(return_value=[])
    options = examinee.ExtendedCopyGraphOptions(find_predecessors=find_predecessors)

    roots = examinee.find_roots(src, image, options)

    assert [r.digest for r in roots] == [image.digest]
    find_predecessors.assert_called_once_with(src, image)


def test_extended_copy_graph(src, dst):
    image = add_image(src, layers={'a': b'layer-a'})
    signature = add_image(src, layers={'sig': b'signature'}, subject=image)
    sbom = add_image(src, layers={'sbom': b'sbom'}, subject=image)

    examinee.extended_copy_graph(src, dst, image)

    assert set(dst.pushed) == set(src.contents)
    # shared nodes are copied once
    assert len(dst.pushed) == len(set(dst.pushed))
    for referrer in (signature, sbom):
        assert dst.pushed.index(image.digest) < dst.pushed.index(referrer.digest)
    assert dst.tags == {}


def test_extended_copy(src, dst):
    image = add_image(src, layers={'a': b'layer-a'}, tag='v1')
    signature = add_image(src, layers={'sig': b'signature'}, subject=image)

    node = examinee.extended_copy(src, 'v1', dst, 'v1')

    assert node.digest == image.digest
    assert dst.tags == {'v1': image.digest}
    assert signature.digest in dst.contents


def test_extended_copy_wraps_referrer_lookup_errors(src, dst):
    image = add_image(src, layers={'a': b'layer-a'}, tag='v1')

    with unittest.mock.patch.object(
        src,
        'predecessors',
        side_effect=requests.exceptions.HTTPError('500 Server Error'),
    ):
        with pytest.raises(om.TransferFailure):
            examinee.extended_copy(src, 'v1', dst, 'v1')

    assert dst.tags == {}
    assert not image.digest in dst.contents


def test_extended_copy_wraps_malformed_referrers(src, dst):
    add_image(src, layers={'a': b'layer-a'}, tag='v1')

    with unittest.mock.patch.object(
        src,
        'predecessors',
        side_effect=ValueError("unknown manifest media_type='text/plain'"),
    ):
        with pytest.raises(om.TransferFailure):
            examinee.extended_copy(src, 'v1', dst, 'v1')

    assert dst.tags == {}
