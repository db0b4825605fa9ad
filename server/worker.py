import time
import logging
from datetime import datetime
from typing import Optional, Callable
from sqlalchemy.orm import Session
from database import SessionLocal
from auction import AuctionHouse, Deadline
from auction import config

logger = logging.getLogger(__name__)

LOOP_SLEEP_SECONDS = 0.5


class Worker:
    """Background scheduler: expiry sweep plus periodic integrity sweep."""

    def __init__(
        self,
        auction_house: Optional[AuctionHouse] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        sweep_interval: float = config.SWEEP_INTERVAL_SECONDS,
        integrity_interval: float = config.INTEGRITY_INTERVAL_SECONDS,
    ):
        self.auction_house = auction_house or AuctionHouse(session_factory=session_factory)
        self.session_factory = session_factory
        self.sweep_interval = sweep_interval
        self.integrity_interval = integrity_interval
        self.running = False
        self.last_sweep: Optional[datetime] = None
        self.last_integrity: Optional[datetime] = None

    def _due(self, last_run: Optional[datetime], interval: float, now: datetime) -> bool:
        return last_run is None or (now - last_run).total_seconds() >= interval

    def run_expired_sweep(self, now: Optional[datetime] = None) -> Optional[dict]:
        """Close expired auctions on a fresh session. The deadline is one sweep interval."""
        db = self.session_factory()
        try:
            result = self.auction_house.process_expired_auctions(
                db,
                now=now,
                deadline=Deadline.after(self.sweep_interval),
            )
            if result["processed_count"]:
                logger.info(f"Sweep closed {result['processed_count']} auction(s)")
            return result
        except Exception as e:
            logger.error(f"Error in expired auction sweep: {e}", exc_info=True)
            db.rollback()
            return None
        finally:
            db.close()

    def run_integrity_sweep(self, now: Optional[datetime] = None) -> Optional[dict]:
        db = self.session_factory()
        try:
            result = self.auction_house.run_integrity_sweep(db, now=now)
            if not result["success"]:
                logger.warning("Integrity sweep reported errors")
            return result
        except Exception as e:
            logger.error(f"Error in integrity sweep: {e}", exc_info=True)
            db.rollback()
            return None
        finally:
            db.close()

    def tick(self, now: Optional[datetime] = None):
        """Run whatever is due. One loop iteration."""
        now = now or datetime.utcnow()
        if self._due(self.last_sweep, self.sweep_interval, now):
            self.run_expired_sweep(now)
            self.last_sweep = now
        if self._due(self.last_integrity, self.integrity_interval, now):
            self.run_integrity_sweep(now)
            self.last_integrity = now

    def run_loop(self):
        """Main worker loop."""
        self.running = True
        logger.info("Worker loop started")

        while self.running:
            try:
                self.tick()
                time.sleep(LOOP_SLEEP_SECONDS)

            except KeyboardInterrupt:
                logger.info("Worker loop interrupted")
                self.running = False
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                time.sleep(1)

    def stop(self):
        """Stop the worker loop."""
        self.running = False
