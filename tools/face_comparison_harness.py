#!/usr/bin/env python3
"""
Face comparison harness - compares a document portrait against a set of
selfie frames with the live Innovatrics API, outside the full verification run.

Reads base64 text files (plain base64 or data URIs) from ./data:
    document_front_base64.txt, profile_image_base64.txt,
    selfie1_base64.txt, selfie2_base64.txt, selfie3_base64.txt
Missing selfie files are skipped; the document file is required.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

# Load environment before the settings object is built
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

from services.innovatrics_service import InnovatricsService  # noqa: E402
from services.provider import VerificationProvider  # noqa: E402
from utils.exceptions import InvalidImageError, RemoteCallError  # noqa: E402
from utils.image import NormalizedImage, normalize_image  # noqa: E402

DATA_DIR = Path(__file__).parent.parent / "data"
DOCUMENT_FILE = "document_front_base64.txt"
SELFIE_FILES = {
    "profile": "profile_image_base64.txt",
    "selfie1": "selfie1_base64.txt",
    "selfie2": "selfie2_base64.txt",
    "selfie3": "selfie3_base64.txt",
}


def read_image(path: Path) -> NormalizedImage:
    return normalize_image(path.read_text(encoding="utf-8"))


def load_images(data_dir: Path = DATA_DIR) -> Tuple[NormalizedImage, List[Tuple[str, NormalizedImage]]]:
    """Document image plus every readable selfie, in file order"""
    document = read_image(data_dir / DOCUMENT_FILE)

    selfies = []
    for label, file_name in SELFIE_FILES.items():
        path = data_dir / file_name
        if not path.exists():
            print(f"⚠️  {file_name} not found, skipping {label}")
            continue
        try:
            selfies.append((label, read_image(path)))
        except InvalidImageError as e:
            print(f"⚠️  {file_name} is not a valid image ({e}), skipping {label}")

    return document, selfies


async def compare_against_document(
    provider: VerificationProvider,
    document: NormalizedImage,
    selfies: List[Tuple[str, NormalizedImage]],
) -> Dict[str, Optional[float]]:
    """Similarity of every selfie to the document portrait; None where a selfie failed"""
    document_face = await provider.detect_face(document.data)
    template = await provider.get_face_template(document_face.id)
    print(f"✅ Document face {document_face.id} (template {template.version}, {len(template.data)} chars)")

    scores: Dict[str, Optional[float]] = {}
    for label, image in selfies:
        try:
            face = await provider.detect_face(image.data)
            similarity = await provider.compare_faces(face.id, template.data)
            scores[label] = similarity.score
            print(f"   Similarity {label} → document: {similarity.score:.3f}")
        except RemoteCallError as e:
            scores[label] = None
            print(f"❌ {label}: {e.message}")

    return scores


def main() -> int:
    print("=" * 80)
    print("FACE COMPARISON HARNESS")
    print("=" * 80)

    try:
        document, selfies = load_images()
    except (OSError, InvalidImageError) as e:
        print(f"❌ ERROR: cannot read document image from {DATA_DIR}: {e}")
        return 1

    print(f"Loaded document ({document.size} bytes) and {len(selfies)} selfie(s)")

    try:
        scores = asyncio.run(compare_against_document(InnovatricsService(), document, selfies))
    except RemoteCallError as e:
        print(f"❌ Document face could not be prepared: {e.message}")
        return 1

    valid = [score for score in scores.values() if score is not None]
    if valid:
        print(f"\nBest score: {max(valid):.3f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
