"""
New-mover polling job.

For every active campaign with polling enabled: fetch recent movers from
Melissa for each target ZIP, skip anyone already seen, mail a postcard
through PostGrid, charge the campaign owner for it and keep the campaign
totals current. Failures for one mover or one campaign are collected and
the run carries on.

Run on a schedule, either via POST /functions/poll-melissa-new-movers or
the `flask poll-new-movers` command.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple

import supabase_rest as db
import melissa_client
import postgrid_client
import billing
from activity_log import log_activity
from errors import AppError

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_cutoff(campaign: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """Movers must have moved after this point to be mailed."""
    for source in ('last_polled_at', 'approved_at', 'created_at'):
        if campaign.get(source):
            return campaign[source], source
    return None, 'none'


def filter_new_movers(movers: List[Dict[str, Any]], cutoff: Optional[str]) -> List[Dict[str, Any]]:
    """Keep movers whose move date is strictly after the cutoff."""
    cutoff_at = db.parse_timestamp(cutoff) if cutoff else None
    fresh = []
    for mover in movers:
        if not mover.get('move_effective_date'):
            continue
        if cutoff_at is None or db.parse_timestamp(mover['move_effective_date']) > cutoff_at:
            fresh.append(mover)
    return fresh


def fetch_pollable_campaigns() -> List[Dict[str, Any]]:
    return db.select_rows('campaigns', {
        'status': 'eq.active',
        'polling_enabled': 'eq.true',
        'target_zip_codes': 'not.is.null',
        'postcard_design_url': 'not.is.null',
    })


class CampaignTotals:
    """Running postcards_sent / total_cost for one campaign during a poll."""

    def __init__(self, campaign: Dict[str, Any]):
        self.campaign_id = campaign['id']
        self.postcards_sent = int(campaign.get('postcards_sent') or 0)
        self.total_cost = float(campaign.get('total_cost') or 0)

    def add_postcard(self) -> None:
        self.postcards_sent += 1
        self.total_cost = round(self.total_cost + billing.PRICE_PER_POSTCARD, 2)
        db.update_rows('campaigns', {'id': f'eq.{self.campaign_id}'}, {
            'postcards_sent': self.postcards_sent,
            'total_cost': self.total_cost,
        })


def record_pending_charge(campaign: Dict[str, Any], mover: Dict[str, Any], postcard_id: str,
                          transaction_id: str) -> None:
    """Audit row for a postcard that was charged immediately."""
    db.insert_row('pending_charges', {
        'campaign_id': campaign['id'],
        'user_id': campaign['user_id'],
        'new_mover_count': 1,
        'amount_cents': billing.PRICE_PER_POSTCARD_CENTS,
        'amount_dollars': billing.PRICE_PER_POSTCARD,
        'billing_reason': billing.BILLING_REASON_NEW_MOVER,
        'scheduled_for': datetime.now(timezone.utc).date().isoformat(),
        'processed': True,
        'processed_at': _now(),
        'is_test_mode': postgrid_client.is_test_mode(),
        'metadata': {
            'new_mover_id': mover['id'],
            'melissa_address_key': mover.get('melissa_address_key'),
            'postgrid_postcard_id': postcard_id,
            'transaction_id': transaction_id,
            'charged_immediately': True,
        },
    })


def process_mover(campaign: Dict[str, Any], mover: Dict[str, Any], totals: CampaignTotals,
                  results: Dict[str, Any]) -> bool:
    """Save, mail and bill one mover. Returns True when a postcard went out."""
    address_key = mover.get('melissa_address_key')

    if db.select_one('newmover', {'select': 'id', 'melissa_address_key': f'eq.{address_key}'}):
        logger.info(f"Skipping existing mover: {address_key}")
        return False

    try:
        saved = db.insert_row('newmover', mover)
    except Exception as e:
        logger.error(f"Error saving mover {address_key}: {str(e)}")
        results['errors'].append({
            'campaign_id': campaign['id'],
            'error': f'Failed to save mover: {str(e)}',
            'mover': address_key,
        })
        return False

    logger.info(f"Saved new mover: {saved.get('full_name')}")

    try:
        postcard = postgrid_client.send_postcard(saved, campaign['postcard_design_url'], campaign)
    except Exception as e:
        logger.error(f"Error sending postcard to {saved.get('full_name')}: {str(e)}")
        results['errors'].append({
            'campaign_id': campaign['id'],
            'error': f'Failed to send postcard: {getattr(e, "message", None) or str(e)}',
            'mover': saved.get('full_name'),
        })
        return False

    postcard_id = postcard.get('id')
    logger.info(f"Postcard sent via PostGrid: {postcard_id}")
    results['postcards_sent'] += 1

    # From here on the postcard is in the mail; bookkeeping failures are
    # reported but never undo the send or skip the remaining steps
    transaction_id = billing.charge_for_postcard(
        campaign, saved['id'], saved.get('melissa_address_key'), postcard_id
    )

    mover_update = {
        'postcard_sent': True,
        'postcard_sent_at': _now(),
        'postgrid_postcard_id': postcard_id,
        'postgrid_status': postcard.get('status'),
    }
    if transaction_id:
        mover_update['transaction_id'] = transaction_id
    _record_step(results, campaign, saved, 'update mover', db.update_rows,
                 'newmover', {'id': f"eq.{saved['id']}"}, mover_update)

    if transaction_id:
        _record_step(results, campaign, saved, 'record pending charge', record_pending_charge,
                     campaign, saved, postcard_id, transaction_id)

    _record_step(results, campaign, saved, 'update campaign totals', totals.add_postcard)
    return True


def _record_step(results: Dict[str, Any], campaign: Dict[str, Any], mover: Dict[str, Any],
                 step: str, func, *args) -> None:
    try:
        func(*args)
    except Exception as e:
        message = getattr(e, 'message', None) or str(e)
        logger.error(f"Postcard sent but failed to {step} for {mover.get('full_name')}: {message}")
        results['errors'].append({
            'campaign_id': campaign['id'],
            'error': f'Postcard sent but failed to {step}: {message}',
            'mover': mover.get('full_name'),
        })


def process_campaign(campaign: Dict[str, Any], results: Dict[str, Any]) -> None:
    logger.info(f"Processing campaign: {campaign.get('campaign_name')} ({campaign['id']})")

    try:
        cutoff, cutoff_source = get_cutoff(campaign)
        logger.info(f"Cutoff date ({cutoff_source}): {cutoff}")

        totals = CampaignTotals(campaign)
        sent = 0

        for zip_code in campaign.get('target_zip_codes') or []:
            raw = melissa_client.fetch_new_movers([zip_code], page=1)
            logger.info(f"Found {len(raw)} movers from Melissa for {zip_code}")
            if not raw:
                continue

            movers = melissa_client.transform_movers(raw, zip_code, campaign['id'])
            fresh = filter_new_movers(movers, cutoff)
            logger.info(f"{len(fresh)} new movers since {cutoff_source}")

            for mover in fresh:
                try:
                    if process_mover(campaign, mover, totals, results):
                        sent += 1
                except Exception as e:
                    logger.error(f"Error processing mover: {str(e)}")
                    results['errors'].append({
                        'campaign_id': campaign['id'],
                        'error': f'Failed to process mover: {str(e)}',
                    })

        db.update_rows('campaigns', {'id': f"eq.{campaign['id']}"}, {'last_polled_at': _now()})
        logger.info(f"Campaign {campaign['id']} complete: {sent} new postcards sent")
        results['campaigns_processed'] += 1

    except Exception as e:
        logger.error(f"Error processing campaign {campaign['id']}: {str(e)}")
        results['errors'].append({
            'campaign_id': campaign['id'],
            'error': f'Campaign processing failed: {getattr(e, "message", None) or str(e)}',
        })


def poll_new_movers() -> Dict[str, Any]:
    """Run one polling pass over every pollable campaign."""
    logger.info(f"Starting Melissa new mover polling at {_now()}")

    if not melissa_client.MELISSA_CUSTOMER_ID:
        raise AppError('MELISSA_CUSTOMER_ID not configured', 500)
    if not postgrid_client.POSTGRID_API_KEY:
        raise AppError('POSTGRID_API_KEY not configured', 500)

    campaigns = fetch_pollable_campaigns()
    if not campaigns:
        logger.info("No active campaigns with polling enabled")
        return {
            'success': True,
            'message': 'No campaigns to poll',
            'campaigns_processed': 0,
            'postcards_sent': 0,
        }

    logger.info(f"Found {len(campaigns)} campaigns to poll")

    results = {'campaigns_processed': 0, 'postcards_sent': 0, 'errors': []}
    for campaign in campaigns:
        process_campaign(campaign, results)

    logger.info(
        f"Polling complete: {results['campaigns_processed']} campaigns, "
        f"{results['postcards_sent']} postcards, {len(results['errors'])} errors"
    )

    metadata = {
        'campaigns_found': len(campaigns),
        'campaigns_processed': results['campaigns_processed'],
        'postcards_sent': results['postcards_sent'],
        'new_movers_discovered': results['postcards_sent'],
        'errors_count': len(results['errors']),
    }
    if results['errors']:
        metadata['errors'] = results['errors']
    log_activity('polling_completed', 'system', None, metadata)

    return {
        'success': True,
        'message': 'Polling completed',
        'timestamp': _now(),
        'campaigns_found': len(campaigns),
        'campaigns_processed': results['campaigns_processed'],
        'postcards_sent': results['postcards_sent'],
        'errors': results['errors'],
    }
