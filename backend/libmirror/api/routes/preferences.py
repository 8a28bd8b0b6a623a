"""User preference endpoints."""

from fastapi import APIRouter, Depends

from libmirror.api.deps import get_preferences_service
from libmirror.schemas.preferences import GlobalSortResponse, GlobalSortUpdate
from libmirror.services.preferences import GlobalSortOption, PreferencesService

router = APIRouter(prefix="/preferences", tags=["preferences"])


def _to_response(option: GlobalSortOption) -> GlobalSortResponse:
    return GlobalSortResponse(sort_type=option.type, ascending=option.ascending)


@router.get("/global-sort", response_model=GlobalSortResponse)
async def get_global_sort(
    preferences: PreferencesService = Depends(get_preferences_service),
) -> GlobalSortResponse:
    """Get the application-wide item sort."""
    return _to_response(await preferences.get_global_sort())


@router.put("/global-sort", response_model=GlobalSortResponse)
async def update_global_sort(
    data: GlobalSortUpdate,
    preferences: PreferencesService = Depends(get_preferences_service),
) -> GlobalSortResponse:
    """Change the application-wide item sort.

    Cached folder covers are recomputed with the new order.
    """
    option = GlobalSortOption(type=data.sort_type, ascending=data.ascending)
    return _to_response(await preferences.set_global_sort(option))
