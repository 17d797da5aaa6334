"""
Testing utilities for sshsession.

Provides MockSSHServer for integration testing against a real SSH
protocol engine without external infrastructure.
"""
from sshsession.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = ["MockSSHServer", "MockServerConfig"]
