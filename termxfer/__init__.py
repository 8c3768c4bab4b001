"""termxfer — terminal file transfer client for SFTP hosts."""

__version__ = "0.6.1"
