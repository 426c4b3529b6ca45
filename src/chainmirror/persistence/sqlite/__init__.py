from chainmirror.persistence.sqlite.cursor_repo import SqliteCursorRepo
from chainmirror.persistence.sqlite.event_log_repo import SqliteEventLogRepo
from chainmirror.persistence.sqlite.global_state_repo import SqliteGlobalStateRepo
from chainmirror.persistence.sqlite.markets_repo import SqliteMarketsRepo
from chainmirror.persistence.sqlite.nonces_repo import SqliteNoncesRepo
from chainmirror.persistence.sqlite.orders_repo import SqliteOrdersRepo
from chainmirror.persistence.sqlite.positions_repo import SqlitePositionsRepo
from chainmirror.persistence.sqlite.trades_repo import SqliteTradesRepo
from chainmirror.persistence.sqlite.users_repo import SqliteUsersRepo

__all__ = [
    "SqliteCursorRepo",
    "SqliteEventLogRepo",
    "SqliteGlobalStateRepo",
    "SqliteMarketsRepo",
    "SqliteNoncesRepo",
    "SqliteOrdersRepo",
    "SqlitePositionsRepo",
    "SqliteTradesRepo",
    "SqliteUsersRepo",
]
