import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.helpers import HOST


@pytest.fixture
def transport() -> MagicMock:
    """Create a mock transport that records writes."""
    transport = MagicMock(spec=asyncio.Transport)
    transport.is_closing.return_value = False
    transport.get_extra_info.return_value = (HOST, 50001)

    def close():
        transport.is_closing.return_value = True

    transport.close.side_effect = close
    return transport


@pytest.fixture
def create_connection(transport: MagicMock) -> AsyncMock:
    """Stand-in for loop.create_connection that connects the protocol to the mock transport."""

    async def connect(protocol_factory, host=None, port=None):
        transport.is_closing.return_value = False
        protocol = protocol_factory()
        protocol.connection_made(transport)
        return transport, protocol

    return AsyncMock(side_effect=connect)
