"""
Example script to run a spherical parametrization
"""

import argparse
import logging

import numpy as np
import trimesh

from config import get_config, update_config_from_dict
from sphere_geometry import signed_tetra_volume
from sphparam import METHOD_ALIASES, METHODS, tri_sphparam


def load_mesh(mesh_path=None) -> trimesh.Trimesh:
    if mesh_path is None:
        print("No mesh given, using an icosphere")
        return trimesh.creation.icosphere(subdivisions=2)
    return trimesh.load(mesh_path, force="mesh", process=False)


def main():
    parser = argparse.ArgumentParser(description="Spherical parametrization of a closed mesh")
    parser.add_argument("mesh", nargs="?", default=None, help="Closed triangular mesh file")
    parser.add_argument(
        "--method",
        default="smacof",
        choices=list(METHODS) + list(METHOD_ALIASES),
    )
    parser.add_argument("--preset", default="default")
    parser.add_argument("--max-iter", type=int, default=100)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--output", default="sphparam_results.json")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
    )

    print("=== Spherical parametrization ===")

    config = get_config(args.preset)
    config = update_config_from_dict(
        config,
        {
            "sphparam.verbose": True,
            "sphparam.seed": args.seed,
            "smacof.max_iter": args.max_iter,
        },
    )

    mesh = load_mesh(args.mesh)
    print(f"Mesh: {len(mesh.vertices)} vertices, {len(mesh.faces)} faces")

    result = tri_sphparam(mesh.faces, mesh.vertices, args.method, config=config)

    vol = signed_tetra_volume(result.tri, result.y)
    print(f"Sphere radius: {result.sphrad:.6f}")
    print(f"Stop condition: {result.stop_condition}")
    print(f"Inverted triangles: {int(np.sum(vol <= 0))}/{len(vol)}")

    result.save(args.output)

    print("\n=== Parametrization Complete ===")


if __name__ == "__main__":
    main()
