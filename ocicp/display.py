'''
human-readable status-lines (as opposed to log-records) emitted while copying
'''

import sys
import threading
import typing

import termcolor

import ocicp.model as om

_print_lock = threading.Lock()

_status_colours = {
    'Uploading': 'cyan',
    'Exists': 'yellow',
    'Copied': 'green',
}


def short_digest(descriptor: om.Descriptor) -> str:
    '''
    returns the first 12 characters of the descriptor's hex-digest (omitting the algorithm)
    '''
    return descriptor.digest.split(':', 1)[-1][:12]


def print_status(
    *values,
    outfh: typing.TextIO=None,
):
    '''
    writes the given values, separated by a single space, as one line to outfh (defaults to
    stdout). Writes are serialised, as copy-callbacks may be invoked from worker-threads.
    Errors raised by outfh are not handled.
    '''
    if outfh is None:
        outfh = sys.stdout

    values = [str(v) for v in values]
    line = ' '.join(values)

    if outfh.isatty() and values and (colour := _status_colours.get(values[0].strip())):
        line = termcolor.colored(values[0], colour) + line[len(values[0]):]

    with _print_lock:
        outfh.write(line + '\n')
        outfh.flush()
