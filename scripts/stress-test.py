"""
Script to benchmark ARPACK and the Davidson presets across different set of
parameters for a given matrix.

See the script plot-stress-test.py about plotting the results.
"""
import argparse
import os.path
import sys

import numpy as np
import pandas as pd

HERE = os.path.dirname(__file__)
sys.path.insert(0, HERE)

from utils import (
    EigensolverParameters, arpack_eig, davidson_eig, find_best_matching,
    load_suitesparse_mat, print_residuals, symmetrize,
)

from davidson.matrices import laplace
from davidson.presets import Method


TOL = 1e-8
MAX_ITERATIONS = 100_000

METHODS = [
    Method.GD_OLSEN_PLUSK,
    Method.JDQMR_ETOL,
    Method.JDQMR,
    Method.LOBPCG_ORTHOBASIS_WINDOW,
]

PARAMETERS = []
for WHICH in ["SA", "LA"]:
    for METHOD in METHODS:
        PARAMETERS.extend([
            EigensolverParameters(3, 20, TOL, MAX_ITERATIONS, METHOD, WHICH),
            EigensolverParameters(6, 20, TOL, MAX_ITERATIONS, METHOD, WHICH),
            EigensolverParameters(10, 25, TOL, MAX_ITERATIONS, METHOD, WHICH),
            EigensolverParameters(20, 40, TOL, MAX_ITERATIONS, METHOD, WHICH),
            EigensolverParameters(10, 30, TOL, MAX_ITERATIONS, METHOD, WHICH, 4),
        ])


def main():
    parser = argparse.ArgumentParser(
        description="Compare the Davidson presets against ARPACK on a Hermitian matrix."
    )
    parser.add_argument(
        "mat_file", nargs="?", default=None,
        help="Path to the .mat file (SuiteSparse format). A 1d Laplacian "
        "is used when omitted",
    )
    parser.add_argument("-n", type=int, default=1_000)
    parser.add_argument("-o", "--output-path", help="CSV Out path", default="output.csv")

    args = parser.parse_args()

    if args.mat_file is not None:
        A = symmetrize(load_suitesparse_mat(args.mat_file))
        name = args.mat_file
    else:
        A = laplace(args.n)
        name = f"laplace ({args.n})"
    A = A.astype(np.result_type(A.dtype, np.float64))
    n = A.shape[0]
    print(f"Matrix: {name}")
    print(f"  shape={n}x{n}, nnz={A.nnz}, dtype={A.dtype}")

    rows = []
    arpack_cache = {}
    for parameters in PARAMETERS:
        print(parameters)
        key = (parameters.nev, parameters.max_basis_size, parameters.which)
        if key not in arpack_cache:
            arpack_cache[key] = arpack_eig(A, parameters)
        arpack_vals, arpack_vecs, arpack_stats = arpack_cache[key]
        dv_vals, dv_vecs, dv_stats = davidson_eig(A, parameters)

        print("\n--- Perf comparison ---")
        print(f"  ARPACK:   {arpack_stats.matvecs} matvecs in {arpack_stats.restarts} iterations  ({arpack_stats.elapsed:.2f}s)")
        print(f"  davidson: {dv_stats.matvecs} matvecs in {dv_stats.restarts} restarts  ({dv_stats.elapsed:.2f}s)")

        match = False
        if len(dv_vals) == len(arpack_vals):
            x, y = find_best_matching(arpack_vals, dv_vals)
            try:
                np.testing.assert_allclose(y, x, rtol=10 * parameters.tol)
                match = True
            except AssertionError as e:
                print("\033[31m!!! ARPACK and davidson don't match !!!\033[0m")
                print(e)
        if not match:
            print_residuals("davidson", A, dv_vals, dv_vecs)

        for method, stats in [("arpack", arpack_stats), (parameters.method.value, dv_stats)]:
            rows.append({
                "method": method,
                "dtype": str(stats.dtype),
                "nev": parameters.nev,
                "max_basis_size": parameters.max_basis_size,
                "block_size": parameters.max_block_size,
                "tol": parameters.tol,
                "max_iterations": parameters.max_iterations,
                "which": parameters.which,
                "elapsed": stats.elapsed,
                "matvecs": stats.matvecs,
                "restarts": stats.restarts,
                "converged": stats.converged,
                "match": match,
            })

    # arpack runs are shared between the presets
    df = pd.DataFrame(rows).drop_duplicates(
        subset=["method", "nev", "max_basis_size", "block_size", "which"]
    )
    df.to_csv(args.output_path, index=False)


if __name__ == "__main__":
    main()
