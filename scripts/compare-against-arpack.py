import argparse
import logging
import os.path
import sys

import numpy as np

import scipy.sparse as sp

HERE = os.path.dirname(__file__)
sys.path.insert(0, HERE)

from utils import (
    EigensolverParameters, WHICH_TO_SORT, arpack_eig, davidson_eig,
    find_best_matching, load_suitesparse_mat, print_residuals, symmetrize,
)

from davidson.matrices import laplace
from davidson.presets import Method


def random_spd(n, density=0.01, seed=0):
    """ Sparse symmetric positive definite matrix, diagonally dominant.
    """
    rng = np.random.default_rng(seed)
    R = sp.random_array((n, n), density=density, rng=rng)
    A = R + R.T
    d = np.asarray(abs(A).sum(axis=1)).ravel() + np.arange(1, n + 1)
    A = A + sp.diags_array(d)
    return A.tocsr()


def main():
    parser = argparse.ArgumentParser(
        description="Compare the Davidson solver against ARPACK on a Hermitian matrix."
    )
    parser.add_argument(
        "mat_file", nargs="?", default=None,
        help="Path to the .mat file (SuiteSparse format). A 1d Laplacian "
        "is used when omitted",
    )
    parser.add_argument(
        "-n", type=int, default=2_000,
        help="Dimension of the generated matrix (default: 2000)",
    )
    parser.add_argument(
        "--random", action="store_true",
        help="Generate a random sparse SPD matrix instead of a Laplacian",
    )
    parser.add_argument(
        "--nev",
        type=int,
        default=6,
        help="Number of eigenvalues to compute (default: 6)",
    )
    parser.add_argument(
        "--tol", type=float, default=1e-8, help="Convergence tolerance (default: 1e-8)"
    )
    parser.add_argument(
        "--max-basis-size",
        type=int,
        default=None,
        help="Maximum basis size / ARPACK ncv (default: max(2*nev+1, 20))",
    )
    parser.add_argument(
        "--max-it",
        type=int,
        default=10_000,
        help="Maximum number of outer iterations (default: 10000)",
    )
    parser.add_argument(
        "--block-size", type=int, default=1, help="Davidson block size (default: 1)"
    )
    parser.add_argument(
        "--method",
        choices=[m.value for m in Method],
        default=Method.DEFAULT_MIN_TIME.value,
        help="Davidson preset (default: default_min_time)",
    )
    parser.add_argument(
        "--which",
        choices=list(WHICH_TO_SORT),
        default="SA",
        help="Which eigenvalues to target: SA (smallest algebraic) "
        "or LA (largest algebraic). Default: SA",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    if args.mat_file is not None:
        A = symmetrize(load_suitesparse_mat(args.mat_file))
        name = args.mat_file
    elif args.random:
        A = random_spd(args.n)
        name = f"random spd ({args.n})"
    else:
        A = laplace(args.n)
        name = f"laplace ({args.n})"
    n = A.shape[0]
    A = A.astype(np.result_type(A.dtype, np.float64))

    parameters = EigensolverParameters.from_cli_args(args, n)

    print(f"Matrix: {name}")
    print(f"  shape={n}x{n}, nnz={A.nnz}, dtype={A.dtype}")
    print(f"  {parameters}")

    print("\n--- Running ARPACK ---")
    arpack_vals, arpack_vecs, arpack_stats = arpack_eig(A, parameters)
    print(f"  matvecs={arpack_stats.matvecs}, elapsed={arpack_stats.elapsed:.2f}s")

    print(f"\n--- Running davidson ({parameters.method.value}) ---")
    dv_vals, dv_vecs, dv_stats = davidson_eig(A, parameters, print_level=args.verbose)
    print(
        f"  matvecs={dv_stats.matvecs}, restarts={dv_stats.restarts}, "
        f"converged={dv_stats.converged}, elapsed={dv_stats.elapsed:.2f}s"
    )

    print_residuals("ARPACK", A, arpack_vals, arpack_vecs)
    print_residuals("davidson", A, dv_vals, dv_vecs)

    if len(dv_vals) == len(arpack_vals):
        x, y = find_best_matching(arpack_vals, dv_vals)
        try:
            np.testing.assert_allclose(y, x, rtol=max(parameters.tol, 1e-12) * 10)
        except AssertionError as e:
            print("\033[31m!!! ARPACK and davidson don't match !!!\033[0m")
            print(e)

    arpack_mv = arpack_stats.matvecs
    pct = (dv_stats.matvecs - arpack_mv) / arpack_mv * 100
    direction = "more" if pct >= 0 else "fewer"

    print("\n--- Matvec comparison ---")
    print(f"  ARPACK:   {arpack_mv} matvecs  ({arpack_stats.elapsed:.2f}s)")
    print(f"  davidson: {dv_stats.matvecs} matvecs  ({dv_stats.elapsed:.2f}s)")
    print(f"  davidson uses {abs(pct):.1f}% {direction} matvecs than ARPACK")


if __name__ == "__main__":
    main()
