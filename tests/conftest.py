import pytest


class Scripted:
    """Random source with a fixed color index and a queue of percent draws."""

    def __init__(self, draws=(), pick=0):
        self.draws = list(draws)
        self.pick = pick
        self.choices = 0

    def choice(self, seq):
        self.choices += 1
        return seq[self.pick]

    def randrange(self, n):
        assert n == 100
        return self.draws.pop(0)


@pytest.fixture
def scripted():
    return Scripted
