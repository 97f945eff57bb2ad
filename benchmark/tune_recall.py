#!/usr/bin/env python3
"""
Measure recall and latency of each index type against flat ground truth.

Generates clustered synthetic vectors, computes brute-force top-K for a set
of queries, then tries several (index type, parameters, approximation factor)
configurations.

Usage:
    uv run python benchmark/tune_recall.py
    uv run python benchmark/tune_recall.py --n-vectors 10000 --dim 128
"""

import argparse
import os
import sys
import tempfile
import time
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))
from simindex import VectorDB

K = 10
N_QUERIES = 100
SEED = 42


def make_data(n_vectors, dim, n_centers=50):
    """Gaussian blobs around random centers, plus held-out queries."""
    print(f"Generating {n_vectors:,} vectors (dim={dim})...")
    rng = np.random.default_rng(SEED)
    centers = rng.standard_normal((n_centers, dim)).astype(np.float32)
    labels = rng.integers(n_centers, size=n_vectors + N_QUERIES)
    data = centers[labels] + 0.3 * rng.standard_normal((n_vectors + N_QUERIES, dim)).astype(np.float32)
    train, queries = data[:n_vectors], data[n_vectors:]

    t0 = time.time()
    train_norms = np.linalg.norm(train, axis=1, keepdims=True)
    train_normalized = train / np.where(train_norms == 0, 1.0, train_norms)
    query_norms = np.linalg.norm(queries, axis=1, keepdims=True)
    query_normalized = queries / np.where(query_norms == 0, 1.0, query_norms)

    sim_matrix = query_normalized @ train_normalized.T
    ground_truth = []
    for i in range(N_QUERIES):
        top_k_idx = np.argpartition(sim_matrix[i], -K)[-K:]
        top_k_idx = top_k_idx[np.argsort(sim_matrix[i, top_k_idx])[::-1]]
        ground_truth.append([str(int(x)) for x in top_k_idx])
    print(f"  Ground truth computed in {time.time()-t0:.1f}s")

    return train, queries, ground_truth


def run_config(train, queries, ground_truth, index_type, factor, params):
    """Test one configuration. Returns dict with metrics."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    db = VectorDB(db_path=db_path, approximation_factor=factor, seed=SEED, **params)
    db.add_many([str(i) for i in range(len(train))], train)

    t0 = time.time()
    if index_type != "none":
        db.create_index(index_type)
    build_time = time.time() - t0

    latencies = []
    recalls = []
    top1_hits = 0
    for i, query in enumerate(queries):
        t0 = time.time()
        if index_type == "none":
            results = db.search_approximate(query, limit=K)
        else:
            results = db.find_similar_by_vector(query, limit=K)
        latencies.append(time.time() - t0)

        result_ids = [r.id for r in results]
        recalls.append(len(set(result_ids) & set(ground_truth[i])) / K)
        top1_hits += ground_truth[i][0] in result_ids

    db.close()
    os.remove(db_path)

    avg_lat = float(np.mean(latencies)) * 1000
    return {
        "index": index_type if index_type != "none" else "lsh*",
        "factor": factor,
        "params": ",".join(f"{k}={v}" for k, v in params.items()) or "-",
        "recall@10": round(float(np.mean(recalls)), 4),
        "top1_in_10": round(top1_hits / len(queries), 4),
        "avg_lat_ms": round(avg_lat, 2),
        "build_s": round(build_time, 2),
    }


def main():
    parser = argparse.ArgumentParser(description="Tune index recall parameters")
    parser.add_argument("--n-vectors", type=int, default=5000,
                        help="Number of vectors to index (default: 5000)")
    parser.add_argument("--dim", type=int, default=64,
                        help="Vector dimension (default: 64)")
    args = parser.parse_args()

    train, queries, ground_truth = make_data(args.n_vectors, args.dim)

    # (index type, approximation factor, constructor params)
    configs = [
        ("flat", 0.1, {}),
        ("ivf", 0.1, {"n_clusters": 10}),
        ("ivf", 0.3, {"n_clusters": 10}),
        ("ivf", 0.2, {"n_clusters": 50}),
        ("hnsw", 0.1, {"m": 8, "ef_search": 50}),
        ("hnsw", 0.1, {"m": 16, "ef_search": 50}),
        ("hnsw", 0.1, {"m": 16, "ef_search": 100}),
        ("lsh", 0.5, {"hash_size": 8}),
        ("lsh", 1.0, {"hash_size": 8}),
        ("lsh", 1.0, {"hash_size": 6}),
        # transient LSH used before any index is built
        ("none", 0.5, {}),
    ]

    print(f"\n{'='*80}")
    print(f"Recall on {args.n_vectors:,} vectors ({N_QUERIES} queries, top-{K})")
    print(f"{'='*80}")
    print(f"{'index':>6} {'f':>5} {'params':>22}  {'R@10':>6} {'top1':>6}  {'lat(ms)':>8} {'build':>7}")
    print("-" * 72)

    for index_type, factor, params in configs:
        r = run_config(train, queries, ground_truth, index_type, factor, params)
        print(f"{r['index']:>6} {r['factor']:>5} {r['params']:>22}  "
              f"{r['recall@10']:>6.4f} {r['top1_in_10']:>6.4f}  "
              f"{r['avg_lat_ms']:>8.2f} {r['build_s']:>6.2f}s")


if __name__ == "__main__":
    main()
