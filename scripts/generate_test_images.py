"""
Generate a small synthetic dataset for trying out the benchmark.
Images have odd sizes, a nested folder, a JPEG and a transparent PNG so that
cropping to scale multiples and flattening are exercised.
Run: python scripts/generate_test_images.py [--outdir test_images]
"""
from PIL import Image, ImageDraw
import argparse
import math
import os

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
TEST_DIR = os.path.join(BASE_DIR, 'test_images')


def save(img, out_dir, rel_path):
    out_path = os.path.join(out_dir, rel_path)
    os.makedirs(os.path.dirname(out_path), exist_ok=True)
    img.save(out_path)
    print('WROTE', out_path)


def make_blank(w, h, color=(255, 255, 255), mode='RGB'):
    return Image.new(mode, (w, h), color)


def gear(w=257, h=193):
    img = make_blank(w, h, (240, 240, 240))
    d = ImageDraw.Draw(img)
    cx, cy = w // 2, h // 2
    r = min(w, h) // 3
    teeth = 16
    for i in range(teeth):
        ang = 2 * math.pi * i / teeth
        x1 = cx + int((r - 5) * math.cos(ang))
        y1 = cy + int((r - 5) * math.sin(ang))
        x2 = cx + int((r + 12) * math.cos(ang + math.pi / teeth))
        y2 = cy + int((r + 12) * math.sin(ang + math.pi / teeth))
        d.line([(x1, y1), (x2, y2)], fill=(60, 60, 60), width=3)
    d.ellipse([cx - r, cy - r, cx + r, cy + r], outline=(0, 0, 0), width=3)
    d.ellipse([cx - 15, cy - 15, cx + 15, cy + 15], outline=(0, 0, 0), width=3)
    return img


def gradient(w=301, h=150):
    img = make_blank(w, h)
    px = img.load()
    for y in range(h):
        for x in range(w):
            px[x, y] = (x * 255 // w, y * 255 // h, 128)
    return img


def checkerboard(w=200, h=131, cell=9):
    img = make_blank(w, h)
    d = ImageDraw.Draw(img)
    for y in range(0, h, cell):
        for x in range(0, w, cell):
            if (x // cell + y // cell) % 2:
                d.rectangle([x, y, x + cell - 1, y + cell - 1], fill=(20, 20, 20))
    return img


def transparent_logo(w=160, h=160):
    img = make_blank(w, h, (0, 0, 0, 0), mode='RGBA')
    d = ImageDraw.Draw(img)
    d.ellipse([20, 20, w - 20, h - 20], fill=(200, 30, 30, 255))
    d.rectangle([60, 60, w - 60, h - 60], fill=(30, 30, 200, 128))
    return img


def generate(out_dir=TEST_DIR):
    save(gear(), out_dir, 'shapes/gear.png')
    save(checkerboard(), out_dir, 'shapes/checkerboard.png')
    save(gradient(), out_dir, 'gradient.jpg')
    save(transparent_logo(), out_dir, 'logo.png')
    return out_dir


if __name__ == '__main__':
    p = argparse.ArgumentParser()
    p.add_argument('--outdir', '-o', default=TEST_DIR)
    args = p.parse_args()
    generate(args.outdir)
    print('Done generating sample images')
