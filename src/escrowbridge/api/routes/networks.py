"""Network registry and fee estimate endpoints."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from escrowbridge.chains import NETWORKS, get_network, get_supported_networks
from escrowbridge.routing.estimates import estimate_fees

router = APIRouter()


@router.get("/networks")
async def list_networks():
    """Supported settlement networks."""
    return {
        "networks": [
            {
                "name": n.name,
                "display_name": n.display_name,
                "is_evm": n.is_evm,
                "chain_id": n.chain_id,
                "native_asset": n.native_asset,
                "tokens": sorted(n.tokens),
            }
            for n in NETWORKS.values()
        ]
    }


@router.get("/estimate")
async def estimate(
    request: Request,
    source: str,
    destination: str,
    amount: str,
    from_address: str,
    to_address: str,
    asset: Optional[str] = None,
    destination_asset: Optional[str] = None,
):
    """Fee and time estimate for moving an amount between networks."""
    from escrowbridge.services.deal_machine import parse_amount

    for network in (source, destination):
        if get_network(network) is None:
            supported = ", ".join(get_supported_networks())
            raise HTTPException(
                status_code=422,
                detail=f"Unsupported network: {network} (supported: {supported})",
            )

    services = request.app.state.services
    result = await estimate_fees(
        services.aggregator,
        source,
        destination,
        asset,
        parse_amount(amount),
        from_address,
        to_address,
        destination_asset=destination_asset,
    )
    return result.to_dict()
