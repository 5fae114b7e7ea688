"""
Unit tests for the connection scoping used by the PostgreSQL stores.
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from objmigrate.repositories._connection import execute_with_connection


class TestExecuteWithConnection:
    @pytest.mark.asyncio
    async def test_engine_writes_run_in_a_transaction(self) -> None:
        engine = MagicMock(spec=AsyncEngine)

        async with execute_with_connection(engine) as conn:
            assert conn is engine.begin.return_value.__aenter__.return_value

        engine.begin.assert_called_once_with()
        engine.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_engine_lookups_use_a_plain_connection(self) -> None:
        engine = MagicMock(spec=AsyncEngine)

        async with execute_with_connection(engine, transactional=False) as conn:
            assert conn is engine.connect.return_value.__aenter__.return_value

        engine.connect.assert_called_once_with()
        engine.begin.assert_not_called()

    @pytest.mark.asyncio
    async def test_caller_connection_is_used_as_is(self) -> None:
        connection = MagicMock(spec=AsyncConnection)

        async with execute_with_connection(connection) as conn:
            assert conn is connection

        connection.commit.assert_not_called()
        connection.begin.assert_not_called()
