#
# Spinner to show progress.
#
# (C) 2024, Nicolai Langfeldt, Schibsted Products and Technology
#

import sys


class Spinner:
    """Spinner to show progress while the pruner waits for a stage of
    registry calls.  Show nothing if we're not on a terminal.

    Each call to next() counts one and prints the next spinner
    character followed by that count, then returns the cursor to the
    start of the line so the next update (or ordinary output)
    overwrites it.
    done() blanks the line when the stage is over.

    The count is of next() calls.  Waiting on tasks in order, as below,
    it is how many tasks from the front of the list are finished; tasks
    further back that finished early are not counted until reached.

    Usage:
      sp = Spinner("Collecting tags", total=len(repositories))

      for task in tasks:
          task.wait()
          sp.next()

      sp.done()
    """

    def __init__(self, label="", total=None, chars="|/-\\"):
        self.label = label
        self.total = total
        self.chars = chars
        self.idx = 0
        self.count = 0
        self.width = 0


    def _line(self):
        line = "%s %s" % (self.chars[self.idx], self.label)
        if self.total is not None:
            line += " %d/%d" % (self.count, self.total)
        else:
            line += " %d" % self.count

        return line.rstrip()


    def next(self):
        """Count one and print the next spinner character"""

        self.count += 1
        self.idx += 1
        if self.idx >= len(self.chars): self.idx = 0

        # No progress unless we have a terminal
        if not sys.stdout.isatty(): return

        line = self._line()
        self.width = max(self.width, len(line))
        print(line, end="\r", flush=True)


    def done(self):
        """Blank out whatever next() left on the line"""

        if not sys.stdout.isatty() or self.width == 0: return

        print(" " * self.width, end="\r", flush=True)
        self.width = 0
