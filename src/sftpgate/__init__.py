"""
sftpgate: an SFTP server that accepts uploads and relays them to a local
directory, an HTTP endpoint and/or an email notification.
"""

__version__ = "1.0.0"

__appname__ = "sftpgate"
