#!/usr/bin/env python3
"""Live webcam cutout demo with a mask overlay view.

Shows the camera with background pixels tinted, next to the foreground
cutout over a checkerboard.

Usage:
    python examples/demo_webcam.py [--camera 0] [--model models/selfie_segmenter.tflite]
"""

import argparse
import sys
import time

import cv2
import numpy as np

sys.path.insert(0, "src")
from cutout_engine import CameraSource, CategoryPolicy, composite, overlay
from cutout_engine.engines import MediaPipeSegmenter
from cutout_engine.errors import CutoutEngineError


def checkerboard(h, w, size=16):
    ys, xs = np.indices((h, w))
    board = (((ys // size) + (xs // size)) % 2) * 60 + 120
    return np.repeat(board[:, :, None], 3, axis=2).astype(np.uint8)


def over_checkerboard(rgba):
    alpha = rgba[:, :, 3:4].astype(np.float32) / 255.0
    board = checkerboard(*rgba.shape[:2])
    rgb = rgba[:, :, :3] * alpha + board * (1.0 - alpha)
    return rgb.astype(np.uint8)


def main():
    parser = argparse.ArgumentParser(description="CutoutEngine Webcam Demo")
    parser.add_argument("--camera", type=int, default=0, help="Camera index")
    parser.add_argument("--model", default="models/selfie_segmenter.tflite", help="Segmentation model")
    parser.add_argument("--delegate", default="cpu", choices=["cpu", "gpu"])
    args = parser.parse_args()

    try:
        segmenter = MediaPipeSegmenter(args.model, delegate=args.delegate)
    except (FileNotFoundError, ImportError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    camera = CameraSource(args.camera)
    try:
        camera.open()
    except CutoutEngineError as e:
        print(f"Error: {e}")
        segmenter.close()
        sys.exit(1)

    print("Starting CutoutEngine...")
    print("Press 'q' to quit\n")

    policy = CategoryPolicy()
    frames = 0
    start = time.monotonic()

    with segmenter:
        while True:
            frame = camera.next_frame()
            if frame is None:
                continue

            try:
                mask = segmenter.infer(frame, frame.timestamp_us)
            except CutoutEngineError as e:
                print(f"  skipped frame: {e}")
                continue

            tinted = overlay(frame, mask, policy, color=(0, 0, 255), opacity=0.6)
            result = composite(frame, mask, policy)
            frames += 1

            view = np.hstack([tinted[:, :, :3], over_checkerboard(result.foreground)])
            fps = frames / max(time.monotonic() - start, 1e-6)
            view = cv2.cvtColor(view, cv2.COLOR_RGB2BGR)
            cv2.putText(
                view,
                f"FPS: {fps:.1f} | Foreground: {result.coverage:.0%}",
                (10, 30),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.7,
                (0, 255, 0),
                2,
            )
            cv2.imshow("CutoutEngine", view)

            if cv2.waitKey(1) & 0xFF == ord("q"):
                break

    camera.close()
    cv2.destroyAllWindows()
    print(f"\nProcessed {frames} frames")


if __name__ == "__main__":
    main()
