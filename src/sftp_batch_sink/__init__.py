"""SFTP Batch Sink: drain a transactional channel into count-rolled files on an SFTP server."""

__version__ = "0.1.0"
