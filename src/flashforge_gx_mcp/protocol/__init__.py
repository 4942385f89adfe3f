"""Protocol layer: block framing, command builders, and reply parsing."""

from .framing import ChunkFrame, frame_chunks, parse_block
from .commands import Command, build_command, normalize_remote_path
from .parser import parse_keyed_block, parse_value
