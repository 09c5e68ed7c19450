from grubmatch.backend.state import (
    JOIN_CODE_ALPHABET,
    build_initial_group,
    build_member,
    generate_join_code,
    mark_member_done,
    normalize_join_code,
    reclaim_host,
    reset_done_swiping,
)


def test_generate_join_code_uses_unambiguous_alphabet() -> None:
    codes = [generate_join_code() for _ in range(200)]

    assert all(len(code) == 6 for code in codes)
    assert all(char in JOIN_CODE_ALPHABET for code in codes for char in code)
    assert not set("IO01") & set("".join(codes))


def test_normalize_join_code_is_case_insensitive() -> None:
    assert normalize_join_code(" abc234 ") == "ABC234"


def test_build_initial_group_has_host_as_only_member() -> None:
    host = build_member(name="Alice", is_host=True)

    group = build_initial_group(group_id="group-1", code="ABC234", name="Friday Dinner", host=host)

    assert group.status == "waiting"
    assert group.preferences is None
    assert group.members == [host]
    assert group.host == host
    assert group.created_at == host.joined_at


def test_mark_member_done_and_reset() -> None:
    alice = build_member(name="Alice", is_host=True)
    bob = build_member(name="Bob")

    members = mark_member_done([alice, bob], bob.id)

    assert members is not None
    assert [member.done_swiping for member in members] == [False, True]
    assert [member.done_swiping for member in reset_done_swiping(members)] == [False, False]
    assert mark_member_done([alice, bob], "unknown") is None


def test_reclaim_host_reattaches_member_with_exact_name() -> None:
    alice = build_member(name="Alice", is_host=False)
    bob = build_member(name="Bob", is_host=True)

    members, host, reattached = reclaim_host([alice, bob], "Alice")

    assert reattached is True
    assert host.id == alice.id
    assert [member.is_host for member in members] == [True, False]


def test_reclaim_host_appends_new_host_when_name_unknown() -> None:
    bob = build_member(name="Bob", is_host=True)

    members, host, reattached = reclaim_host([bob], "alice")

    assert reattached is False
    assert host.name == "alice"
    assert host.is_host is True
    assert [member.is_host for member in members] == [False, True]
    assert members[-1] == host
