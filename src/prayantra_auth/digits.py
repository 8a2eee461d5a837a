"""Fixed-length digit cell input used for OTP and MPIN entry."""

from typing import List

OTP_LENGTH = 6
MPIN_LENGTH = 6


class DigitInput:
    """
    Model of a row of single-digit cells with a focus cursor.

    Typing one character fills the cell and advances focus. A multi-character
    value is treated as a paste: non-digits are dropped, the rest is truncated
    to the field length and distributed from cell 0, replacing all cells.
    Focus lands on the first cell past the last filled one, or on the last
    cell when the paste fills every slot.
    """

    def __init__(self, length: int = OTP_LENGTH):
        if length < 1:
            raise ValueError('length must be at least 1')
        self.length = length
        self.cells: List[str] = [''] * length
        self.focus = 0

    @property
    def value(self) -> str:
        return ''.join(self.cells)

    @property
    def is_complete(self) -> bool:
        return all(self.cells)

    def enter(self, index: int, text: str) -> int:
        """Handle a change event on cell ``index``. Returns the new focus index."""
        self._check_index(index)
        if len(text) > 1:
            return self.paste(text)

        if text and not text.isdigit():
            return self.focus

        self.cells[index] = text
        if text and index < self.length - 1:
            self.focus = index + 1
        else:
            self.focus = index
        return self.focus

    def paste(self, text: str) -> int:
        """Distribute a pasted string across the cells. Returns the new focus index."""
        digits = [char for char in text if char.isdigit()][: self.length]
        if not digits:
            return self.focus

        self.cells = digits + [''] * (self.length - len(digits))
        self.focus = min(len(digits), self.length - 1)
        return self.focus

    def backspace(self, index: int) -> int:
        """Handle backspace on cell ``index``.

        An empty cell moves focus back to the previous cell.
        """
        self._check_index(index)
        if self.cells[index]:
            self.cells[index] = ''
            self.focus = index
        elif index > 0:
            self.focus = index - 1
        return self.focus

    def set_value(self, text: str) -> None:
        """Replace the contents with ``text`` (same rules as a paste)."""
        self.clear()
        self.paste(text)

    def clear(self) -> None:
        """Empty every cell and focus the first one."""
        self.cells = [''] * self.length
        self.focus = 0

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.length:
            raise IndexError(f'cell index {index} out of range for length {self.length}')

    def __repr__(self) -> str:
        masked = ''.join('*' if cell else '_' for cell in self.cells)
        return f'DigitInput({masked}, focus={self.focus})'
