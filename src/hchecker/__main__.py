from hchecker.cli import run

run()
