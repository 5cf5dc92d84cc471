"""
Lending system facade

Wires storage, stores, clock, events and services together from the
configuration.
"""

from datetime import date
from typing import Optional

from .accrual import OverdueAccrualEngine
from .clock import Clock, SystemClock
from .config import EMIEngineConfig, get_config
from .events import EventDispatcher, get_global_dispatcher
from .loans import LoanService
from .logging_config import get_logger
from .payments import Page, PaymentService
from .repositories import EMIStore, LoanStore
from .scheduler import OverdueSweeper
from .stats import DayCollection, EMISearch, LoanStats, PortfolioStats, StatsService
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface


logger = get_logger("emi_engine.system")


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(
        self,
        config: Optional[EMIEngineConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        self.clock = clock or SystemClock(self.config.timezone)
        self.dispatcher = dispatcher or get_global_dispatcher()

        # Initialize core components
        self.loan_store = LoanStore(self.storage)
        self.emi_store = EMIStore(self.storage)
        self.accrual_engine = OverdueAccrualEngine(
            self.loan_store, self.emi_store, self.clock, dispatcher=self.dispatcher
        )
        self.loan_service = LoanService(
            self.loan_store, self.emi_store, self.clock,
            interest_rate=self.config.interest_rate, dispatcher=self.dispatcher,
            config=self.config
        )
        self.payment_service = PaymentService(
            self.loan_store, self.emi_store, self.accrual_engine, self.clock,
            dispatcher=self.dispatcher
        )
        self.stats_service = StatsService(self.loan_store, self.emi_store)
        self.sweeper = OverdueSweeper(self.accrual_engine, self.config.sweep_interval_seconds)

    def _sweep_before_read(self) -> None:
        """Bring overdue state up to date; a failed sweep is logged and the read still served"""
        if not self.config.sweep_on_read:
            return
        try:
            self.accrual_engine.process_overdues()
        except Exception:
            logger.exception("Sweep before read failed, serving stored state")

    # Admin read models

    def loan_stats(self, loan_id: str) -> LoanStats:
        self._sweep_before_read()
        return self.stats_service.loan_stats(loan_id)

    def portfolio_stats(self) -> PortfolioStats:
        self._sweep_before_read()
        return self.stats_service.portfolio_stats()

    def due_on(self, day: Optional[date] = None) -> DayCollection:
        """EMIs due on a day (default today) with their collection summary"""
        self._sweep_before_read()
        return self.stats_service.due_on(day or self.clock.today())

    def loan_emis(self, loan_id: str, **kwargs) -> Page:
        self._sweep_before_read()
        return self.payment_service.loan_emis(loan_id, **kwargs)

    def search_emis(self, **kwargs) -> EMISearch:
        """Admin EMI listing; see StatsService.search_emis for the filters"""
        self._sweep_before_read()
        return self.stats_service.search_emis(**kwargs)

    # Sweeper lifecycle

    def start_sweeper(self) -> OverdueSweeper:
        self.sweeper.start()
        return self.sweeper

    def stop_sweeper(self) -> None:
        self.sweeper.stop()

    def close(self) -> None:
        self.stop_sweeper()
        self.storage.close()
        logger.debug("Lending system closed")
