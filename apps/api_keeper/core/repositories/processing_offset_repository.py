from abc import ABC, abstractmethod
from typing import Optional


class ProcessingOffsetRepository(ABC):
    """
    Repository interface for tracking processing offsets/checkpoints
    (last fully processed block per event stream).
    """

    @abstractmethod
    async def ensure_indexes(self) -> None:
        """
        Ensure the collection has the proper indexes.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_last_block(self, stream: str, block_number: int) -> None:
        """
        Advance the last fully processed block for the given stream key.
        The watermark never moves back.

        :param stream: Unique stream key (e.g., 'hook_signals_11155111').
        :param block_number: Inclusive upper bound of the last acknowledged page.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_last_block(self, stream: str) -> Optional[int]:
        """
        Retrieve the watermark for a given stream.

        :param stream: Unique stream key.
        :return: Block number or None if the stream never ran.
        """
        raise NotImplementedError
