from __future__ import annotations

import json
import logging
import platform
import uuid

logger = logging.getLogger(__name__)


def host_fingerprint() -> str:
    """Describe the host that handled an auth event, as a JSON string.

    Recorded in audit rows so a reviewer can tell which bot instance
    processed a challenge or override.
    """
    try:
        node = uuid.getnode()
        # getnode() falls back to a random number with the multicast bit set
        mac = "unknown" if (node >> 40) & 0x01 else ":".join(
            f"{(node >> shift) & 0xFF:02x}" for shift in range(40, -1, -8)
        )
        return json.dumps(
            {
                "hostname": platform.node(),
                "platform": platform.system().lower(),
                "release": platform.release(),
                "mac": mac,
            }
        )
    except Exception:
        logger.warning("Could not collect device info", exc_info=True)
        return "unknown"
