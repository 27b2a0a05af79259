'''
logging-setup for the `ocicp` command

log-records are emitted to stderr; stdout is reserved for status-lines (see `ocicp.display`).
'''

from copy import copy
import logging
import sys


class Bcolors:
    RESET_ALL = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'


class OcicpFormatter(logging.Formatter):
    '''
    exposes the (optionally coloured) level-name as `levelprefix` to format-strings
    '''
    level_colours = {
        logging.DEBUG: Bcolors.BLUE,
        logging.INFO: Bcolors.GREEN,
        logging.WARNING: Bcolors.YELLOW,
        logging.ERROR: Bcolors.RED,
        logging.CRITICAL: Bcolors.RED,
    }

    def __init__(self, *args, colored: bool=None, **kwargs):
        super().__init__(*args, **kwargs)
        if colored is None:
            colored = sys.stderr.isatty()
        self.colored = colored

    def levelprefix(self, record: logging.LogRecord) -> str:
        if not self.colored or not (colour := self.level_colours.get(record.levelno)):
            return record.levelname
        return f'{Bcolors.BOLD}{colour}{record.levelname}{Bcolors.RESET_ALL}'

    def formatMessage(self, record):
        # do not leak levelprefix into records seen by other handlers
        record = copy(record)
        record.levelprefix = self.levelprefix(record)
        return super().formatMessage(record)


def default_fmt_string(print_thread_id: bool=False) -> str:
    thread_id = 'TID:%(thread)d ' if print_thread_id else ''
    return f'%(asctime)s [%(levelprefix)s] {thread_id}%(name)s: %(message)s'


def log_level(
    debug: bool=False,
    verbose: bool=False,
) -> int:
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    return logging.WARNING


def configure_default_logging(
    level: int=None,
    force: bool=True,
    print_thread_id: bool=False,
):
    if not level:
        level = logging.WARNING

    if force:
        for handler in list(logging.root.handlers):
            logging.root.removeHandler(handler)
            handler.close()

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(OcicpFormatter(fmt=default_fmt_string(print_thread_id=print_thread_id)))

    logging.root.addHandler(hdlr=handler)
    logging.root.setLevel(level=level)

    # too verbose, even for debugging
    logging.getLogger('urllib3').setLevel(max(level, logging.INFO))
    if level > logging.DEBUG:
        logging.getLogger('ocicp.client.request_logger').setLevel(logging.INFO)
