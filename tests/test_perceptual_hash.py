from provn.services import perceptual_hash


def test_hashes_are_64_bit_hex(make_image):
    path = make_image("frame.png")
    for func in (perceptual_hash.phash, perceptual_hash.dhash, perceptual_hash.ahash):
        value = func(path)
        assert len(value) == 16
        int(value, 16)


def test_identical_images_match(make_image):
    a = make_image("a.png", seed=1)
    b = make_image("b.png", seed=1)
    assert perceptual_hash.phash(a) == perceptual_hash.phash(b)
    assert perceptual_hash.hash_similarity(perceptual_hash.phash(a), perceptual_hash.phash(b)) == 1.0


def test_light_noise_stays_similar(make_image):
    clean = perceptual_hash.phash(make_image("clean.png", seed=3))
    noisy = perceptual_hash.phash(make_image("noisy.png", seed=3, noise=2.0))
    assert perceptual_hash.hash_similarity(clean, noisy) > 0.85


def test_different_images_do_not_match(make_image):
    a = perceptual_hash.phash(make_image("a.png", seed=10))
    b = perceptual_hash.phash(make_image("b.png", seed=20))
    assert perceptual_hash.hash_similarity(a, b) < 0.95


def test_hamming_distance_edge_cases():
    assert perceptual_hash.hamming_distance("ff", "00") == 8
    assert perceptual_hash.hamming_distance("ff", "fff") == float("inf")
    assert perceptual_hash.hamming_distance("zz", "zz") == float("inf")
    assert perceptual_hash.hash_similarity("", "ff") == 0.0


def test_sequence_similarity_uses_best_match():
    frames = ["0000000000000000", "ffffffffffffffff"]
    reordered = list(reversed(frames))
    assert perceptual_hash.sequence_similarity(frames, reordered) == 1.0
    assert perceptual_hash.sequence_similarity(frames, []) == 0.0


def test_video_fingerprint_uses_middle_frame(make_image):
    paths = [make_image(f"f{i}.png", seed=i) for i in range(3)]
    fingerprint = perceptual_hash.video_fingerprint(paths)
    assert len(fingerprint["frame_hashes"]) == 3
    assert fingerprint["perceptual_hash"] == fingerprint["frame_hashes"][1]


def test_find_duplicate_respects_threshold():
    fingerprint = {"perceptual_hash": "0000000000000000", "frame_hashes": ["0000000000000000"]}
    near = {"video_id": "v1", "token_id": "1", "frame_hashes": ["0000000000000001"]}
    far = {"video_id": "v2", "token_id": "2", "frame_hashes": ["00000000000000ff"]}

    match = perceptual_hash.find_duplicate(fingerprint, [far, near], threshold=0.95)
    assert match["token_id"] == "1"
    assert match["similarity"] == 1 - 1 / 64

    assert perceptual_hash.find_duplicate(fingerprint, [far], threshold=0.95) is None


def test_find_duplicate_falls_back_to_primary_hash():
    fingerprint = {"perceptual_hash": "abcdabcdabcdabcd", "frame_hashes": []}
    candidate = {"video_id": "v1", "token_id": "9", "perceptual_hash": "abcdabcdabcdabcd", "frame_hashes": []}
    assert perceptual_hash.find_duplicate(fingerprint, [candidate])["token_id"] == "9"
