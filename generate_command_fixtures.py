# Write every fixed command frame to its own file (named after the command) for manual protocol testing,
# e.g. `nc speaker 50001 < fixtures/VOL_GET | xxd`
import sys
from pathlib import Path

from pykef.protocol import COMMANDS

target = Path(sys.argv[1] if len(sys.argv) > 1 else "fixtures")
target.mkdir(parents=True, exist_ok=True)
for name, frame in COMMANDS.items():
    (target / name).write_bytes(frame)
    print(f"{name}: {frame.hex(' ')}")
