"""Run shell commands inside tmux panes and detect when they finish."""

__version__ = "0.1.0"
