"""
SQL Server connections.

Opening a connection is retried; the statements run over it are not. A
failed RESTORE is reported to the caller instead of being repeated.
"""

import logging
import time
from functools import wraps
from typing import Callable, Tuple, Type

import pymssql

logger = logging.getLogger(__name__)


def retry(
    max_attempts: int = 3,
    delay: int = 5,
    exceptions: Tuple[Type[BaseException], ...] = (pymssql.OperationalError, pymssql.InterfaceError),
):
    """Retry decorator for functions that might fail temporarily.

    Args:
        max_attempts: Maximum number of attempts
        delay: Delay between attempts in seconds
        exceptions: Exception types that trigger another attempt

    Returns:
        Decorated function that will retry on exception
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {func.__name__}: {str(e)}"
                    )
                    if attempt < max_attempts:
                        logger.info(f"Retrying in {delay} seconds...")
                        time.sleep(delay)
                    else:
                        logger.error(f"All {max_attempts} attempts failed for {func.__name__}")
                        raise
        return wrapper
    return decorator


def open_connection(mssql_settings, database: str = "master", connect: Callable = None):
    """
    Open an autocommit connection to SQL Server.

    RESTORE cannot run inside a transaction, so connections are always
    autocommit.

    Args:
        mssql_settings: ``MSSQLSettings`` instance
        database: Database to connect to
        connect: Replacement for ``pymssql.connect``

    Returns:
        pymssql connection

    Raises:
        ConnectionError: If every attempt fails
    """
    connect = connect or pymssql.connect
    params = mssql_settings.get_connection_dict()

    @retry(max_attempts=mssql_settings.retry_attempts, delay=mssql_settings.retry_delay)
    def _connect():
        logger.debug(f"Connecting to SQL Server {params['server']}:{params['port']}")
        return connect(
            server=params["server"],
            port=int(params["port"]),
            user=params["user"],
            password=params["password"],
            database=database,
            autocommit=True,
            timeout=int(params["timeout"]),
            login_timeout=int(params["login_timeout"]),
        )

    try:
        return _connect()
    except (pymssql.OperationalError, pymssql.InterfaceError) as e:
        raise ConnectionError(
            f"Failed to connect to SQL Server after {mssql_settings.retry_attempts} attempts: {str(e)}"
        ) from e


def connection_factory(mssql_settings, database: str = "master") -> Callable:
    """Return a zero-argument callable opening a new connection each time."""
    return lambda: open_connection(mssql_settings, database)
