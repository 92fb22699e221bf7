"""Asset preparation for print.

Upscaling artwork to print resolution is deferred until payment is
confirmed, so it is only paid for on orders that will actually be printed.
The service never blocks an order: when the upscaler fails the original
design URL is used and the item is marked ``FALLBACK``. The outcome is
stored on each item, so a retried fulfillment reuses it instead of
upscaling again.
"""

import logging

from .domain import AssetOutcome, PreparedAsset, UpscaleContext, UpscalerPort

logger = logging.getLogger(__name__)

PRINT_READY_MARKERS = ("/orders/", "-300dpi", "print-ready")


def needs_upscaling(url: str) -> bool:
    """Return False for URLs that already point at a print-resolution file.

    Files written by the upscaler live under ``/orders/`` and carry a
    ``-300dpi`` suffix; anything else (temporary or saved designs) is
    treated as screen resolution.
    """
    return not any(marker in url for marker in PRINT_READY_MARKERS)


class AssetPreparationService:
    """Produce a print-ready asset URL for each order item."""

    def __init__(self, upscaler: UpscalerPort):
        self.upscaler = upscaler

    def prepare(self, source_url: str, context: UpscaleContext) -> PreparedAsset:
        """Return a print-ready URL for ``source_url``.

        Args:
            source_url: Design URL as uploaded by the customer.
            context: Order/item identifiers used to name the output file.

        Returns:
            PreparedAsset: ``PASSTHROUGH`` when no work was needed,
            ``UPSCALED`` on success, ``FALLBACK`` with the source URL when
            the upscaler failed.
        """
        if not self.upscaler.needs_upscaling(source_url):
            return PreparedAsset(source_url, AssetOutcome.PASSTHROUGH)
        try:
            result = self.upscaler.upscale(source_url, context)
        except Exception:
            logger.exception(
                "upscale failed, falling back to original asset",
                extra={"order_id": context.order_id, "item_index": context.item_index, "source_url": source_url},
            )
            return PreparedAsset(source_url, AssetOutcome.FALLBACK)
        if not result.print_ready_url:
            logger.warning(
                "upscaler returned no url, falling back to original asset",
                extra={"order_id": context.order_id, "item_index": context.item_index},
            )
            return PreparedAsset(source_url, AssetOutcome.FALLBACK)
        logger.info(
            "asset upscaled",
            extra={"order_id": context.order_id, "item_index": context.item_index, "size_bytes": result.size_bytes},
        )
        return PreparedAsset(result.print_ready_url, AssetOutcome.UPSCALED)

    def prepare_order(self, order, repository) -> dict[int, str]:
        """Prepare every item of ``order`` sequentially and persist outcomes.

        Items without a design URL are left out of the mapping; the
        submission step rejects them. Items that already have an outcome
        recorded are not prepared again.

        Returns:
            dict[int, str]: Print-ready URL keyed by order item id.
        """
        urls: dict[int, str] = {}
        for index, item in enumerate(order.items.all()):
            if item.asset_outcome and item.print_ready_url:
                urls[item.pk] = item.print_ready_url
                continue
            source = item.print_ready_url or item.design_url
            if not source:
                logger.warning("order item has no design url", extra={"order_id": order.pk, "item_id": item.pk})
                continue
            prepared = self.prepare(
                source, UpscaleContext(order_id=order.pk, item_index=index, product_code=item.sku)
            )
            repository.save_item_asset(item, prepared)
            urls[item.pk] = prepared.url
        return urls
