"""Unit tests for the digit cell input model."""

import pytest

from prayantra_auth.digits import DigitInput


@pytest.mark.unit
class TestDigitEntry:
    def test_typing_advances_focus(self):
        field = DigitInput(6)

        assert field.enter(0, '4') == 1
        assert field.enter(1, '2') == 2
        assert field.value == '42'

    def test_last_cell_keeps_focus(self):
        field = DigitInput(6)
        field.paste('12345')

        assert field.enter(5, '6') == 5
        assert field.is_complete

    def test_non_digit_ignored(self):
        field = DigitInput(6)

        field.enter(0, 'a')

        assert field.cells[0] == ''
        assert field.focus == 0

    def test_index_out_of_range(self):
        with pytest.raises(IndexError):
            DigitInput(6).enter(6, '1')


@pytest.mark.unit
class TestDigitPaste:
    def test_full_paste_focuses_last_cell(self):
        field = DigitInput(6)

        focus = field.paste('123456')

        assert field.value == '123456'
        assert focus == 5

    def test_paste_filters_and_truncates(self):
        field = DigitInput(6)

        field.paste('12-34 56789')

        assert field.value == '123456'

    def test_partial_paste_focuses_next_empty_cell(self):
        field = DigitInput(6)

        focus = field.paste('123')

        assert field.cells == ['1', '2', '3', '', '', '']
        assert focus == 3

    def test_paste_replaces_previous_contents(self):
        field = DigitInput(6)
        field.paste('999999')

        field.paste('12')

        assert field.cells == ['1', '2', '', '', '', '']

    def test_multi_char_change_event_is_paste(self):
        field = DigitInput(6)

        field.enter(3, '654321')

        assert field.value == '654321'

    def test_paste_without_digits_is_ignored(self):
        field = DigitInput(6)
        field.enter(0, '7')

        field.paste('abc')

        assert field.value == '7'
        assert field.focus == 1


@pytest.mark.unit
class TestDigitBackspace:
    def test_backspace_on_filled_cell_clears_it(self):
        field = DigitInput(6)
        field.paste('123')

        assert field.backspace(2) == 2
        assert field.value == '12'

    def test_backspace_on_empty_cell_moves_back(self):
        field = DigitInput(6)
        field.paste('12')

        assert field.backspace(2) == 1
        assert field.value == '12'

    def test_backspace_on_first_empty_cell_stays(self):
        assert DigitInput(6).backspace(0) == 0


@pytest.mark.unit
def test_clear_and_repr_masks_digits():
    field = DigitInput(4)
    field.set_value('1234')

    assert repr(field) == 'DigitInput(****, focus=3)'

    field.clear()

    assert field.value == ''
    assert field.focus == 0
