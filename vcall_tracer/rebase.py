import logging

from .memory import wrap_address

logger = logging.getLogger(__name__)


def compute_offset(static_entry, runtime_entry):
    """Load bias between the file entry point and the one seen at the first stop.

    Zero when the image was not relocated or the runtime entry is unknown (0).
    """
    if runtime_entry == 0 or runtime_entry == static_entry:
        return 0
    return runtime_entry - static_entry


class RebaseResolver:
    """Translate static addresses to runtime addresses with a single load bias."""

    def __init__(self, offset=0):
        self.offset = offset

    @classmethod
    def from_entries(cls, static_entry, runtime_entry):
        resolver = cls(compute_offset(static_entry, runtime_entry))
        if resolver.offset:
            logger.info(f"PIE: rebase_offset={resolver.offset:#x}")
        else:
            logger.info("no PIE or same base")
        return resolver

    def translate(self, address):
        return wrap_address(address + self.offset)

    def translate_inverse(self, runtime_address):
        return wrap_address(runtime_address - self.offset)
