import random
from collections import Counter

import pytest

from bracket_bot.bracket import BracketBusy, generate_bracket
from bracket_bot.demo import build_demo_entrants, populate_demo_entrants
from bracket_bot.seeding import SeedingLockedError, assign_seeds, shuffled_seeds


def test_shuffled_seeds_is_a_permutation():
    entrants = build_demo_entrants("cup")
    pairs = shuffled_seeds(entrants, random.Random(3))

    assert sorted(seed for _, seed in pairs) == list(range(1, 21))
    assert {entrant.entrant_id for entrant, _ in pairs} == set(range(1, 21))


def test_shuffled_seeds_ignores_rating():
    entrants = build_demo_entrants("cup")
    top_by_rating = max(entrants, key=lambda entrant: entrant.rating).entrant_id

    top_seeds = Counter()
    rng = random.Random(11)
    for _ in range(200):
        pairs = shuffled_seeds(entrants, rng)
        top_seeds[pairs[0][0].entrant_id] += 1

    # A rating-based seeding would hand seed 1 to the same entrant every time.
    assert top_seeds[top_by_rating] < 200
    assert len(top_seeds) > 10


def test_assign_seeds_persists_every_seed(storage):
    populate_demo_entrants(storage)

    seeded = assign_seeds(storage, random.Random(7))

    assert [entrant.seed for entrant in seeded] == list(range(1, 21))
    stored = storage.list_entrants(order_by="seed")
    assert [entrant.entrant_id for entrant in stored] == [
        entrant.entrant_id for entrant in seeded
    ]


def test_assign_seeds_reruns_independently(storage):
    populate_demo_entrants(storage)

    first = [entrant.entrant_id for entrant in assign_seeds(storage, random.Random(1))]
    second = [entrant.entrant_id for entrant in assign_seeds(storage, random.Random(2))]

    assert first != second
    assert sorted(entrant.seed for entrant in storage.list_entrants()) == list(
        range(1, 21)
    )


def test_assign_seeds_with_same_rng_seed_is_reproducible(storage):
    populate_demo_entrants(storage)

    first = [entrant.entrant_id for entrant in assign_seeds(storage, random.Random(5))]
    second = [entrant.entrant_id for entrant in assign_seeds(storage, random.Random(5))]

    assert first == second


def test_assign_seeds_with_no_entrants(storage):
    assert assign_seeds(storage) == []


def test_assign_seeds_refuses_while_bracket_exists(seeded_storage):
    generate_bracket(seeded_storage)
    before = {e.entrant_id: e.seed for e in seeded_storage.list_entrants()}

    with pytest.raises(SeedingLockedError, match="23 match"):
        assign_seeds(seeded_storage, random.Random(3))
    assert {e.entrant_id: e.seed for e in seeded_storage.list_entrants()} == before


def test_reseeding_with_regeneration_keeps_bracket_in_step(seeded_storage):
    generate_bracket(seeded_storage)

    matches = generate_bracket(
        seeded_storage,
        seeder=lambda target: assign_seeds(
            target, random.Random(9), replace_bracket=True
        ),
    )
    by_seed = seeded_storage.list_entrants(order_by="seed")
    first_round = [(m.slot_a, m.slot_b) for m in matches if m.round == 1]
    assert first_round[0] == (by_seed[4].entrant_id, by_seed[5].entrant_id)
    byes = [m.slot_a for m in matches if m.round == 2][:4]
    assert byes == [entrant.entrant_id for entrant in by_seed[:4]]


def test_seeder_does_not_run_while_generation_is_locked(seeded_storage):
    calls = []
    with seeded_storage.bracket_lock("someone-else"):
        with pytest.raises(BracketBusy):
            generate_bracket(seeded_storage, seeder=calls.append)
    assert calls == []
