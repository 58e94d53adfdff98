"""Project version constants.

Printed by ``streamtab --version`` so that a pipeline run can be traced back
to a specific engine and wire format.
"""

ENGINE_NAME: str = "streamtab"
ENGINE_VERSION: str = "0.1.0"

# Arrow IPC streaming format, metadata version V5
WIRE_FORMAT: str = "arrow-ipc-stream"
WIRE_FORMAT_VERSION: int = 5
