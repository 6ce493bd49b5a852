"""
Device ID generation and management.
Each device keeps its own reconciliation state, keyed by this ID.
"""

import uuid
from pathlib import Path
from typing import Union


DEVICE_ID_FILENAME = "device_id.txt"


def get_or_create_device_id(state_dir: Union[str, Path]) -> str:
    """
    Get existing device ID or create a new one.

    Device ID is stored persistently in state_dir so it survives restarts.
    """
    id_file = Path(state_dir) / DEVICE_ID_FILENAME

    if id_file.exists():
        with open(id_file, 'r') as f:
            device_id = f.read().strip()
            if device_id:
                return device_id

    device_id = f"device-{uuid.uuid4().hex[:12]}"

    id_file.parent.mkdir(parents=True, exist_ok=True)
    with open(id_file, 'w') as f:
        f.write(device_id)

    return device_id
