import pytest

from roll.domain.identity.service import IdentityService, IdentityServiceError, ProfileNotFound, normalise_phone
from roll.domain.social.models import USERS


def test_normalise_phone():
    assert normalise_phone(" +1 (514) 555-0100 ") == "+15145550100"


@pytest.mark.asyncio
async def test_register_creates_empty_relationship_sets(store):
    service = IdentityService(store)
    user_id = await service.register_user("  Ada  ", "+1 514 555 0100")
    snapshot = await store.get(USERS, user_id)
    assert snapshot.get("displayName") == "Ada"
    assert snapshot.get("phoneNumber") == "+15145550100"
    assert snapshot.get("friends") == []
    assert snapshot.get("blocked") == []
    assert snapshot.get("blockedBy") == []


@pytest.mark.asyncio
async def test_register_defaults_display_name_and_rejects_bad_phone(store):
    service = IdentityService(store)
    user_id = await service.register_user("", "+447700900123")
    assert (await service.get_profile(user_id)).display_name == "No Name"

    with pytest.raises(IdentityServiceError) as exc_info:
        await service.register_user("Bob", "555-0100")
    assert exc_info.value.reason == "phone_number_invalid"


@pytest.mark.asyncio
async def test_update_contacts_merges(store):
    service = IdentityService(store)
    user_id = await service.register_user("Ada", "+15145550100", user_id="ada")
    await service.update_contacts(user_id, {"c1": "+1 514 555 0101"})
    merged = await service.update_contacts(user_id, {"c2": "+15145550102"})
    assert merged == {"c1": "+15145550101", "c2": "+15145550102"}
    assert (await service.get_profile("ada")).contacts == merged

    with pytest.raises(ProfileNotFound):
        await service.update_contacts("ghost", {"c1": "+1"})


@pytest.mark.asyncio
async def test_profile_image_update(store):
    service = IdentityService(store)
    user_id = await service.register_user("Ada", "+15145550100")
    await service.update_profile_image(user_id, "http://img/ada.jpg")
    assert (await service.get_profile(user_id)).profile_image == "http://img/ada.jpg"
    with pytest.raises(ProfileNotFound):
        await service.get_profile("ghost")
