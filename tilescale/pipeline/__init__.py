"""
Tile-based Super-Resolution Pipeline

1. Tiler - overlapping tile grid
2. Scheduler - bounded concurrent enhancement of every tile
3. Merger - feathered blend onto the upscaled canvas
4. Final pass - optional whole-image consistency pass
"""
