"""eth_create3 package root.

Deploy the same contract to the same address across EVM networks
through a deterministic factory.

- Address prediction: :py:mod:`eth_create3.address`

- Deployment orchestration: :py:mod:`eth_create3.deployment`

- Source code verification: :py:mod:`eth_create3.verify`

"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"eth-create3 needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
