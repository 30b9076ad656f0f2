import logging
import uuid

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import SweepReport
from Mail_Router.mr_server.mail_provider import MailProvider
from Mail_Router.mr_server.router import MessageRouter

logger = logging.getLogger("mr_server.sweep")


class SweepJob:
    """Drains the fallback mailbox into the router, one cooperative run at a time.

    Each provider message gets a ``sweep-seen`` marker before it is routed, so
    a later run never routes (or audits) the same message twice.
    """

    def __init__(
        self,
        client: redis.asyncio.Redis,
        provider: MailProvider,
        router: MessageRouter,
        batch_size: int = 50,
        lock_seconds: int = 300,
        seen_ttl_seconds: int = 2_592_000,
    ):
        self.db: redis.asyncio.Redis = client
        self.provider = provider
        self.router = router
        self.batch_size = batch_size
        self.lock_seconds = lock_seconds
        self.seen_ttl_seconds = seen_ttl_seconds

    def _seen_key(self, provider_id: str) -> str:
        return f"{config.SWEEP_SEEN_PREFIX}:{provider_id}"

    async def _acquire(self, token: str) -> bool:
        return bool(await self.db.set(config.SWEEP_LOCK_KEY, token, nx=True, ex=self.lock_seconds))

    async def _release(self, token: str) -> None:
        holder = await self.db.get(config.SWEEP_LOCK_KEY)
        if holder is not None and holder.decode() == token:
            await self.db.delete(config.SWEEP_LOCK_KEY)

    async def _cleanup(self, provider_id: str) -> None:
        try:
            await self.provider.delete_message(provider_id)
        except errors.ProviderError as e:
            logger.warning("provider_delete_failed id=%s detail=%s", provider_id, e.detail)

    async def run(self) -> SweepReport:
        token = uuid.uuid4().hex
        try:
            if not await self._acquire(token):
                logger.info("sweep_skipped reason=lock-held")
                return SweepReport(processed=0, skipped=0, failed=0, ran=False)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("sweep_lock")

        processed = skipped = failed = 0
        try:
            try:
                messages = await self.provider.list_unprocessed(self.batch_size)
            except errors.ProviderError as e:
                logger.warning("sweep_list_failed detail=%s", e.detail)
                return SweepReport(processed=0, skipped=0, failed=0)

            for message in messages:
                seen_key = self._seen_key(message.provider_id)
                if not await self.db.set(seen_key, "1", nx=True, ex=self.seen_ttl_seconds):
                    skipped += 1
                    await self._cleanup(message.provider_id)
                    continue

                try:
                    await self.router.handle_inbound(message)
                    processed += 1
                except errors.RejectedAddressError:
                    failed += 1
                except errors.StoreUnavailableError:
                    # leave it at the provider for the next run
                    await self.db.delete(seen_key)
                    failed += 1
                    continue

                await self._cleanup(message.provider_id)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("sweep_run")
        finally:
            try:
                await self._release(token)
            except redis.exceptions.ConnectionError:
                logger.warning("sweep_lock_release_failed")

        logger.info("sweep_done processed=%d skipped=%d failed=%d", processed, skipped, failed)
        return SweepReport(processed=processed, skipped=skipped, failed=failed)
