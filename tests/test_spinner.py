"""Tests for the progress spinner."""

import io

from Spinner import Spinner


class FakeTerminal(io.StringIO):
    def isatty(self):
        return True


def test_silent_when_not_a_terminal(capsys):
    sp = Spinner("Collecting tags", total=2)
    sp.next()
    sp.next()
    sp.done()

    assert capsys.readouterr().out == ""
    assert sp.count == 2


def test_shows_progress_on_a_terminal(monkeypatch):
    term = FakeTerminal()
    monkeypatch.setattr("sys.stdout", term)

    sp = Spinner("Collecting tags", total=3)
    sp.next()
    sp.next()

    assert term.getvalue() == "/ Collecting tags 1/3\r- Collecting tags 2/3\r"

    sp.done()
    assert term.getvalue().endswith(" " * len("- Collecting tags 2/3") + "\r")
