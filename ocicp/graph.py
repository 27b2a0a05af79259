'''
copying of content-addressed artifact-graphs between targets (see `ocicp.remote`)

an artifact-graph consists of nodes (manifests and blobs) identified by their descriptors.
Edges point from a manifest to its successors (subject, config, layers, or sub-manifests).
Referrers (manifests declaring a node as their `subject`) are predecessors of that node, and
are only followed by "extended" copies.
'''

import collections.abc
import concurrent.futures
import dataclasses
import hashlib
import logging
import threading
import typing

import ocicp.model as om

logger = logging.getLogger(__name__)

# callbacks receive the descriptor of the node in question; they signal failure by raising
copy_callback = collections.abc.Callable[[om.Descriptor], None]


@dataclasses.dataclass
class CopyGraphOptions:
    '''
    concurrency: max. number of blobs transferred in parallel
    max_metadata_bytes: max. size of manifests (which are read into memory)
    pre_copy: called before a node is transferred
    post_copy: called after a node was transferred
    on_copy_skipped: called for nodes already present at destination (those are not
        descended into)
    find_successors: override for `ocicp.model.successors`
    '''
    concurrency: int = 3
    max_metadata_bytes: int = 4 * 1024 * 1024 # 4 MiB
    pre_copy: copy_callback | None = None
    post_copy: copy_callback | None = None
    on_copy_skipped: copy_callback | None = None
    find_successors: collections.abc.Callable[
        [om.Descriptor, bytes], list[om.Descriptor]
    ] | None = None


@dataclasses.dataclass
class CopyOptions(CopyGraphOptions):
    '''
    map_root: if set, called w/ source and resolved root-descriptor; the returned descriptor
        is copied instead (e.g. to select a platform-specific manifest from an index)
    '''
    map_root: collections.abc.Callable[
        [typing.Any, om.Descriptor], om.Descriptor
    ] | None = None


@dataclasses.dataclass
class ExtendedCopyGraphOptions(CopyGraphOptions):
    '''
    depth: max. number of predecessor-levels to follow (0 means unlimited)
    find_predecessors: override for `src.predecessors`
    '''
    depth: int = 0
    find_predecessors: collections.abc.Callable[
        [typing.Any, om.Descriptor], list[om.Descriptor]
    ] | None = None


@dataclasses.dataclass
class ExtendedCopyOptions(ExtendedCopyGraphOptions):
    pass


def _check_cancelled(cancel: threading.Event | None):
    if cancel is not None and cancel.is_set():
        raise om.CopyCancelled('copy was cancelled')


def _invoke(
    callback: copy_callback | None,
    descriptor: om.Descriptor,
):
    if not callback:
        return

    try:
        callback(descriptor)
    except om.OciCopyError:
        raise
    except Exception as e:
        raise om.CallbackFailure(
            f'callback {getattr(callback, "__name__", callback)} failed for '
            f'{descriptor.digest=}: {e}'
        ) from e


def _fetch_metadata(
    src,
    descriptor: om.Descriptor,
    max_metadata_bytes: int,
) -> bytes:
    if descriptor.size > max_metadata_bytes:
        raise om.TransferFailure(
            f'{descriptor.digest=} exceeds {max_metadata_bytes=} ({descriptor.size=})'
        )

    content = b''.join(src.fetch(descriptor))

    if len(content) != descriptor.size:
        raise om.TransferFailure(
            f'size mismatch for {descriptor.digest=}: {descriptor.size=} vs. {len(content)=}'
        )

    algorithm, expected = descriptor.digest.split(':', 1)
    if algorithm == 'sha256' and hashlib.sha256(content).hexdigest() != expected:
        raise om.TransferFailure(f'digest mismatch for {descriptor.digest=}')

    return content


@dataclasses.dataclass
class _Node:
    descriptor: om.Descriptor
    content: bytes | None # only set for manifests


def _plan(
    src,
    dst,
    root: om.Descriptor,
    options: CopyGraphOptions,
    seen: set[str],
) -> list[_Node]:
    '''
    traverses the graph rooted at `root` and returns the nodes to be transferred, ordered such
    that every node comes after its successors.
    '''
    find_successors = options.find_successors or om.successors
    nodes = []

    def visit(descriptor: om.Descriptor):
        if descriptor.digest in seen:
            return
        seen.add(descriptor.digest)

        if dst.exists(descriptor):
            logger.debug(f'{descriptor.digest=} already exists at {dst=}')
            _invoke(options.on_copy_skipped, descriptor)
            return

        if om.is_manifest(descriptor.mediaType):
            content = _fetch_metadata(
                src=src,
                descriptor=descriptor,
                max_metadata_bytes=options.max_metadata_bytes,
            )
            for successor in find_successors(descriptor, content):
                visit(successor)
        else:
            content = None

        nodes.append(_Node(descriptor=descriptor, content=content))

    visit(root)

    return nodes


def _transfer(
    src,
    dst,
    node: _Node,
    options: CopyGraphOptions,
    cancel: threading.Event | None,
):
    _check_cancelled(cancel)

    descriptor = node.descriptor
    _invoke(options.pre_copy, descriptor)

    if node.content is not None:
        content = node.content
    else:
        content = src.fetch(descriptor)

    logger.debug(f'pushing {descriptor.digest=} {descriptor.mediaType=} to {dst=}')
    dst.push(descriptor, content)

    _invoke(options.post_copy, descriptor)


def _copy_graph(
    src,
    dst,
    root: om.Descriptor,
    options: CopyGraphOptions,
    cancel: threading.Event | None,
    seen: set[str],
):
    _check_cancelled(cancel)

    try:
        nodes = _plan(
            src=src,
            dst=dst,
            root=root,
            options=options,
            seen=seen,
        )

        blobs = [n for n in nodes if n.content is None]
        manifests = [n for n in nodes if n.content is not None]

        logger.info(
            f'{root.digest=}: will copy {len(blobs)} blob(s), {len(manifests)} manifest(s)'
        )

        if blobs:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=max(1, options.concurrency),
            ) as pool:
                futures = [
                    pool.submit(_transfer, src, dst, node, options, cancel)
                    for node in blobs
                ]
                _, not_done = concurrent.futures.wait(
                    futures,
                    return_when=concurrent.futures.FIRST_EXCEPTION,
                )
                for future in not_done:
                    future.cancel()
                for future in futures:
                    if future.done() and not future.cancelled() and future.exception():
                        raise future.exception()

        # manifests must be pushed after their successors (registries may reject them otherwise)
        for node in manifests:
            _transfer(src, dst, node, options, cancel)
    except om.OciCopyError:
        raise
    except Exception as e:
        raise om.TransferFailure(f'failed to copy {root.digest=} from {src} to {dst}: {e}') from e


def copy_graph(
    src,
    dst,
    root: om.Descriptor,
    options: CopyGraphOptions=None,
    cancel: threading.Event=None,
):
    '''
    copies the graph rooted at `root` from `src` to `dst`. Nodes already present at `dst` are
    skipped, including their successors. No tags are set at `dst`.
    '''
    if options is None:
        options = CopyGraphOptions()

    _copy_graph(
        src=src,
        dst=dst,
        root=root,
        options=options,
        cancel=cancel,
        seen=set(),
    )


def _tag(dst, descriptor: om.Descriptor, reference: str):
    try:
        dst.tag(descriptor, reference)
    except om.OciCopyError:
        raise
    except Exception as e:
        raise om.TransferFailure(f'failed to tag {descriptor.digest=} as {reference=}: {e}') from e


def copy(
    src,
    src_ref: str,
    dst,
    dst_ref: str,
    options: CopyOptions=None,
    cancel: threading.Event=None,
) -> om.Descriptor:
    '''
    resolves `src_ref` at `src`, copies the resulting graph to `dst` and tags it there as
    `dst_ref` (defaults to `src_ref`). Returns the descriptor of the copied root.
    '''
    if options is None:
        options = CopyOptions()
    if not dst_ref:
        dst_ref = src_ref

    root = src.resolve(src_ref)

    if options.map_root:
        root = options.map_root(src, root)

    copy_graph(
        src=src,
        dst=dst,
        root=root,
        options=options,
        cancel=cancel,
    )

    _check_cancelled(cancel)
    _tag(dst=dst, descriptor=root, reference=dst_ref)

    return root


def find_roots(
    src,
    node: om.Descriptor,
    options: ExtendedCopyGraphOptions=None,
) -> list[om.Descriptor]:
    '''
    walks up the predecessors (referrers) of `node` and returns the topmost nodes, i.e. those
    w/o predecessors, or those found at `options.depth` levels above node.
    '''
    if options is None:
        options = ExtendedCopyGraphOptions()

    if options.find_predecessors:
        find_predecessors = options.find_predecessors
    else:
        def find_predecessors(src, descriptor):
            return src.predecessors(descriptor)

    roots = {}
    visited = set()
    stack = [(node, 0)]

    while stack:
        descriptor, depth = stack.pop()
        if descriptor.digest in visited:
            continue
        visited.add(descriptor.digest)

        if options.depth > 0 and depth == options.depth:
            roots[descriptor.digest] = descriptor
            continue

        predecessors = find_predecessors(src, descriptor)
        if not predecessors:
            roots[descriptor.digest] = descriptor
            continue

        for predecessor in predecessors:
            stack.append((predecessor, depth + 1))

    return list(roots.values())


def extended_copy_graph(
    src,
    dst,
    node: om.Descriptor,
    options: ExtendedCopyGraphOptions=None,
    cancel: threading.Event=None,
):
    '''
    like `copy_graph`, but additionally copies all artifacts referring to `node` (directly or
    transitively), such as signatures or SBOMs.
    '''
    if options is None:
        options = ExtendedCopyGraphOptions()

    try:
        roots = find_roots(src=src, node=node, options=options)
    except om.OciCopyError:
        raise
    except Exception as e:
        raise om.TransferFailure(f'failed to find referrers of {node.digest=}: {e}') from e

    logger.info(f'{node.digest=}: found {len(roots)} root(s)')

    seen = set()
    for root in roots:
        _copy_graph(
            src=src,
            dst=dst,
            root=root,
            options=options,
            cancel=cancel,
            seen=seen,
        )


def extended_copy(
    src,
    src_ref: str,
    dst,
    dst_ref: str,
    options: ExtendedCopyOptions=None,
    cancel: threading.Event=None,
) -> om.Descriptor:
    '''
    resolves `src_ref` at `src`, copies the resulting graph including referrers to `dst` and
    tags it there as `dst_ref` (defaults to `src_ref`). Returns the descriptor of the resolved
    node.
    '''
    if options is None:
        options = ExtendedCopyOptions()
    if not dst_ref:
        dst_ref = src_ref

    node = src.resolve(src_ref)

    extended_copy_graph(
        src=src,
        dst=dst,
        node=node,
        options=options,
        cancel=cancel,
    )

    _check_cancelled(cancel)
    _tag(dst=dst, descriptor=node, reference=dst_ref)

    return node
