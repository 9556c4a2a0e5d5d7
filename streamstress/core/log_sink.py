from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER = "streamstress"

# Verbosity bits accepted by -d, most verbose first.
_MASK_LEVELS = (
    (16, logging.DEBUG),
    (8, logging.INFO),
    (4, logging.INFO),
    (1024, logging.INFO),
    (2, logging.WARNING),
    (1, logging.ERROR),
)


def level_from_mask(mask: int) -> int:
    for bit, level in _MASK_LEVELS:
        if mask & bit:
            return level
    return logging.CRITICAL


def instance_logger(instance_name: str, component: str | None = None) -> logging.Logger:
    name = f"{ROOT_LOGGER}.{instance_name}"
    if component:
        name = f"{name}.{component}"
    return logging.getLogger(name)


@dataclass
class InstanceSink:
    instance_name: str
    path: Path
    logger: logging.Logger
    handler: logging.Handler

    def close(self) -> None:
        self.handler.flush()
        self.logger.removeHandler(self.handler)
        self.handler.close()
        self.logger.propagate = True


def attach_instance_sink(instance_name: str, log_dir: str | Path, level: int = logging.INFO) -> InstanceSink:
    """Route one instance's logger tree to its own file, and only there."""
    path = Path(log_dir) / f"{instance_name}.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger = instance_logger(instance_name)
    logger.setLevel(level)
    logger.addHandler(handler)
    logger.propagate = False
    return InstanceSink(instance_name=instance_name, path=path, logger=logger, handler=handler)


def hexdump(data: bytes, width: int = 16) -> str:
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset : offset + width]
        hex_part = " ".join(f"{byte:02X}" for byte in chunk)
        text_part = "".join(chr(byte) if 32 <= byte < 127 else "." for byte in chunk)
        lines.append(f"{offset:04X}: {hex_part:<{width * 3}} {text_part}")
    return "\n".join(lines)
