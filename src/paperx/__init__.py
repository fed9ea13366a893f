"""paperx: LaTeX paper workspaces with one-shot and watch-mode builds."""

__version__ = "0.1.0"
