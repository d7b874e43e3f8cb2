"""MediaPipe Face Mesh wrapper returning pixel-space landmarks.

The model is created inside the face worker thread (see FaceAnalysisLoop)
and only ever used from that thread.
"""

import logging
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

FACE_MESH_LANDMARKS = 468


class FaceLandmarkModel:
    """Single-face landmark detector.

    Args:
        min_detection_confidence: Minimum confidence for face detection (0-1).
        min_tracking_confidence: Minimum confidence for landmark tracking (0-1).
    """

    def __init__(
        self,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ) -> None:
        import mediapipe as mp

        self._det_conf = max(0.01, min(0.99, float(min_detection_confidence)))
        self._track_conf = max(0.01, min(0.99, float(min_tracking_confidence)))
        self._face_mesh = mp.solutions.face_mesh.FaceMesh(
            static_image_mode=False,
            max_num_faces=1,
            refine_landmarks=False,
            min_detection_confidence=self._det_conf,
            min_tracking_confidence=self._track_conf,
        )
        logger.info(
            "Face mesh loaded (detection=%.2f, tracking=%.2f)", self._det_conf, self._track_conf
        )

    def detect(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        """Return an (N, 2) array of landmark pixel coordinates, or None.

        Args:
            rgb: HxWx3 uint8 image in RGB order.
        """
        h, w = rgb.shape[:2]
        result = self._face_mesh.process(np.ascontiguousarray(rgb))
        if not result.multi_face_landmarks:
            return None
        landmarks = result.multi_face_landmarks[0].landmark
        points = np.empty((len(landmarks), 2), dtype=np.float64)
        for i, lm in enumerate(landmarks):
            points[i, 0] = lm.x * w
            points[i, 1] = lm.y * h
        return points

    def close(self) -> None:
        self._face_mesh.close()


def downscale(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize an RGB frame to the fixed analysis resolution."""
    if image.shape[1] == width and image.shape[0] == height:
        return image
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
