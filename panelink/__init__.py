"""PaneLink — dual-pane file manager core with virtual SFTP mirrors."""

__version__ = "0.1.0"
