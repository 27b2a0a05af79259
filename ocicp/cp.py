'''
copy-orchestration: decides how an artifact is copied from one repository to another

depending on whether referrers are to be included (`recursive`), and whether the destination
reference carries a tag, one of four strategies from `ocicp.graph` is chosen (see `CopyMode`).
'''

import enum
import logging
import threading
import typing

import ocicp.client as oc
import ocicp.display as od
import ocicp.graph as og
import ocicp.model as om
import ocicp.remote as orem

logger = logging.getLogger(__name__)


class CopyMode(enum.Enum):
    '''
    COPY: copy graph, tag destination (source is resolved by `ocicp.graph.copy`)
    COPY_GRAPH: resolve source, copy graph, do not tag destination
    EXTENDED_COPY: like COPY, also copying referrers
    EXTENDED_COPY_GRAPH: like COPY_GRAPH, also copying referrers
    '''
    COPY = 'copy'
    COPY_GRAPH = 'copy-graph'
    EXTENDED_COPY = 'extended-copy'
    EXTENDED_COPY_GRAPH = 'extended-copy-graph'


def copy_mode(recursive: bool, tagged: bool) -> CopyMode:
    if recursive:
        if tagged:
            return CopyMode.EXTENDED_COPY
        return CopyMode.EXTENDED_COPY_GRAPH

    if tagged:
        return CopyMode.COPY
    return CopyMode.COPY_GRAPH


def copy_callbacks(
    verbose: bool=False,
    outfh: typing.TextIO=None,
) -> tuple[og.copy_callback, og.copy_callback]:
    '''
    returns the two-tuple (pre_copy, on_copy_skipped)
    '''
    def pre_copy(descriptor: om.Descriptor):
        if (name := descriptor.title) is None:
            if not verbose:
                return
            name = descriptor.mediaType

        od.print_status('Uploading', od.short_digest(descriptor), name, outfh=outfh)

    def on_copy_skipped(descriptor: om.Descriptor):
        od.print_status(
            'Exists   ',
            od.short_digest(descriptor),
            descriptor.title or '',
            outfh=outfh,
        )

    return pre_copy, on_copy_skipped


def copy_options(
    verbose: bool=False,
    outfh: typing.TextIO=None,
    concurrency: int=None,
) -> tuple[og.CopyOptions, og.ExtendedCopyOptions]:
    '''
    returns the options for both plain and extended copies. Both share the same callbacks.
    '''
    pre_copy, on_copy_skipped = copy_callbacks(verbose=verbose, outfh=outfh)

    copy_opts = og.CopyOptions()
    extended_copy_opts = og.ExtendedCopyOptions()

    for opts in (copy_opts, extended_copy_opts):
        opts.pre_copy = pre_copy
        opts.on_copy_skipped = on_copy_skipped
        if concurrency:
            opts.concurrency = concurrency

    return copy_opts, extended_copy_opts


def run_copy(
    src: orem.Repository,
    dst: orem.Repository,
    recursive: bool=False,
    verbose: bool=False,
    cancel: threading.Event=None,
    outfh: typing.TextIO=None,
    concurrency: int=None,
) -> om.Descriptor:
    '''
    copies the artifact referenced by `src.reference` to `dst`. If `recursive` is truthy,
    artifacts referring to it (e.g. signatures) are also copied.

    if `dst.reference` carries a tag (or digest), the copied artifact is tagged accordingly,
    otherwise it is only addressable by its digest at `dst`.

    `cancel` is passed to `ocicp.graph` as is. Errors are not handled; the first one aborts the
    copy.
    '''
    copy_opts, extended_copy_opts = copy_options(
        verbose=verbose,
        outfh=outfh,
        concurrency=concurrency,
    )

    if not (src_ref := src.reference.reference):
        raise om.InvalidReference(src.reference.original_image_reference)

    dst_ref = dst.reference.reference
    mode = copy_mode(recursive=recursive, tagged=bool(dst_ref))

    logger.info(f'{mode=} {src.reference=} {dst.reference=}')

    if mode is CopyMode.COPY_GRAPH:
        descriptor = src.resolve(src_ref)
        og.copy_graph(src, dst, descriptor, copy_opts, cancel=cancel)
    elif mode is CopyMode.COPY:
        descriptor = og.copy(src, src_ref, dst, dst_ref, copy_opts, cancel=cancel)
    elif mode is CopyMode.EXTENDED_COPY_GRAPH:
        descriptor = src.resolve(src_ref)
        og.extended_copy_graph(src, dst, descriptor, extended_copy_opts, cancel=cancel)
    elif mode is CopyMode.EXTENDED_COPY:
        descriptor = og.extended_copy(src, src_ref, dst, dst_ref, extended_copy_opts, cancel=cancel)
    else:
        raise NotImplementedError(mode)

    od.print_status(
        'Copied',
        src.reference.original_image_reference,
        '=>',
        dst.reference.original_image_reference,
        outfh=outfh,
    )
    od.print_status('Digest:', descriptor.digest, outfh=outfh)

    return descriptor


def copy_artifact(
    src_ref: str,
    dst_ref: str,
    recursive: bool=False,
    verbose: bool=False,
    src_client: oc.Client=None,
    dst_client: oc.Client=None,
    cancel: threading.Event=None,
    outfh: typing.TextIO=None,
    concurrency: int=None,
) -> om.Descriptor:
    '''
    convenience wrapper around `run_copy`, accepting image-references as strings.

    pass either `src_client` (in which case it is also used for dst, unless `dst_client` is
    passed, too), or both clients.
    '''
    if not src_client:
        raise ValueError('src_client must be passed')
    if not dst_client:
        dst_client = src_client

    src = orem.Repository(reference=src_ref, client=src_client)
    dst = orem.Repository(reference=dst_ref, client=dst_client)

    return run_copy(
        src=src,
        dst=dst,
        recursive=recursive,
        verbose=verbose,
        cancel=cancel,
        outfh=outfh,
        concurrency=concurrency,
    )
