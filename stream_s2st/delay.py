"""Fixed-length ring buffer for acoustic delay compensation (Moshi-style).

The model samples the semantic codebooks for the current step but the acoustic
codebooks for ``acoustic_delay`` steps ago. A row of the buffer is one step's
audio-token vector over all codebooks; it becomes complete once its delayed
codebooks have been written, ``acoustic_delay`` steps after it was opened.
"""

from typing import Optional

import torch

UNGENERATED = -1


class AcousticDelayBuffer:
    """Delay cache of ``max(delays) + 1`` rows over all codebooks.

    Per step the caller writes every codebook once with ``write`` and then
    calls ``advance``, which returns the row that just became complete (or
    None during the initial ramp of ``max(delays)`` steps).

    Args:
        delays: Per-codebook delays in steps
        pad_token: Token fed to the model where no real token exists yet
    """

    def __init__(self, delays: list[int], pad_token: int):
        self.delays = torch.tensor(delays, dtype=torch.long)
        self.num_codebooks = len(delays)
        self.max_delay = int(self.delays.max().item()) if delays else 0
        self.pad_token = pad_token

        # [num_codebooks, max_delay + 1], UNGENERATED marks empty slots
        self.cache = torch.full((self.num_codebooks, self.max_delay + 1), UNGENERATED, dtype=torch.long)
        self.offset = 0
        self.last_completed: Optional[list[int]] = None
        self._previous = [pad_token] * self.num_codebooks

    @property
    def depth(self) -> int:
        """Steps between a row being opened and becoming complete."""
        return self.max_delay

    @property
    def num_slots(self) -> int:
        return self.cache.shape[1]

    def write(self, codebook_idx: int, token: int, delay: Optional[int] = None) -> None:
        """Write the token produced at the current step for ``codebook_idx``.

        The token belongs to audio time ``offset - delay``; during the ramp
        (offset < delay) there is no such time and the token is dropped.
        ``delay`` overrides the codebook delay for tokens that arrive already
        time-aligned (source audio codes).
        """
        if delay is None:
            delay = int(self.delays[codebook_idx].item())
        row = self.offset - delay
        if row < 0:
            return
        self.cache[codebook_idx, row % self.num_slots] = token
        self._previous[codebook_idx] = token

    def advance(self) -> Optional[list[int]]:
        """Close the current step, returning the row that became complete."""
        completed = None
        row = self.offset - self.max_delay
        if row >= 0:
            slot = row % self.num_slots
            values = self.cache[:, slot]
            if bool((values != UNGENERATED).all()):
                completed = values.tolist()
                self.last_completed = completed
            # Slot is reused for the row opened at the next step
            self.cache[:, slot] = UNGENERATED
        self.offset += 1
        return completed

    def model_input(self) -> list[int]:
        """Tokens fed to the model at the current step, one per codebook.

        Undelayed codebooks read the previous step's token. Delayed codebooks
        read the last completed row, so every codebook in the input refers to
        audio the model has already fully produced.
        """
        tokens = []
        for k in range(self.num_codebooks):
            if int(self.delays[k].item()) == 0:
                tokens.append(self._previous[k] if self.offset > 0 else self.pad_token)
            elif self.last_completed is None:
                tokens.append(self.pad_token)
            else:
                tokens.append(self.last_completed[k])
        return tokens
