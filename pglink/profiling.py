import csv
import logging
import time
from os import environ

import portalocker


logger = logging.getLogger(__name__)

PROFILING_ENV = "PGPROFILING"

# First column of every row, bumped if the row layout changes.
ROW_VERSION = "1"


def _open_log():
    filename = environ.get(PROFILING_ENV)
    if filename is None:
        return None
    try:
        return open(filename, "a", newline="")
    except OSError as e:
        logger.debug("profiling disabled, can't open %s: %s", filename, e)
        return None


def profile_op(conn_id, op, detail, func):
    """Runs ``func()``.  If the ``PGPROFILING`` environment variable names a
    file, a CSV row is appended to it recording the elapsed time and the
    outcome of the call:

        1, conn_id, op, elapsed_ms, "ok" or repr(exception), *detail

    The file is locked while the row is written so that concurrent writers
    don't interleave.  The result of ``func()`` is returned, or its exception
    re-raised.
    """

    f = _open_log()
    if f is None:
        return func()

    with f:
        start_time = time.monotonic()
        try:
            result = func()
        except BaseException as e:
            outcome = repr(e)
            raise
        else:
            outcome = "ok"
            return result
        finally:
            elapsed_ms = int(1000 * (time.monotonic() - start_time))
            row = [ROW_VERSION, conn_id, op, str(elapsed_ms), outcome]
            row.extend(detail)
            portalocker.lock(f, portalocker.LOCK_EX)
            try:
                csv.writer(f).writerow(row)
                f.flush()
            finally:
                portalocker.unlock(f)
