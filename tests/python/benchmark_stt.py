"""
Speech-to-text provider benchmark for CallQC.

Runs every configured provider against the same recordings and reports
speed, confidence and word-count agreement. Needs real vendor keys in the
environment (GROQ_API_KEY, SARVAM_API_KEY, ...).

Usage:
    python tests/python/benchmark_stt.py recording1.wav [recording2.mp3 ...] --runs 2
"""
import argparse
import json
import os
import statistics
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

# Add the repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from backend.callqc.config import settings
from backend.callqc.logging_config import setup_logging
from backend.callqc.services.stt import TranscriptionManager, TranscriptionOptions


class ProviderBenchmarker:
    """Benchmarks the configured STT providers on local recordings."""

    def __init__(self, language: str = None):
        self.manager = TranscriptionManager.from_settings(settings)
        self.options = TranscriptionOptions(language=language or settings.stt_language)
        self.runs: List[Dict[str, Any]] = []

    def benchmark_file(self, audio_path: Path, runs: int = 1) -> None:
        print(f"\nBenchmarking {audio_path.name} ({audio_path.stat().st_size / 1024:.0f} KB)...")
        for run in range(runs):
            print(f"  Run {run + 1}/{runs}...")
            outcome = self.manager.transcribe_with_all(str(audio_path), self.options)
            comparison = TranscriptionManager.compare_results(outcome)
            self.runs.append({"file": audio_path.name, "run": run + 1, "comparison": comparison})

            for name, result in outcome["results"].items():
                if result["ok"]:
                    r = result["result"]
                    print(f"    {name}: {r.processing_time_ms}ms, {r.word_count} words, confidence {r.confidence}")
                else:
                    print(f"    {name}: FAILED {result['error'].get('code')}: {result['error'].get('message')}")

    def summarize(self) -> Dict[str, Any]:
        """Per-provider timing statistics across every run."""
        timings: Dict[str, List[int]] = {}
        failures: Dict[str, int] = {}
        outliers: Dict[str, int] = {}
        for run in self.runs:
            comparison = run["comparison"]
            for item in comparison.get("transcriptions", []):
                timings.setdefault(item["provider"], []).append(item["processing_time_ms"])
            for failure in comparison.get("failures", comparison.get("failed_providers", [])):
                failures[failure["provider"]] = failures.get(failure["provider"], 0) + 1
            for item in comparison.get("outliers", []):
                outliers[item["provider"]] = outliers.get(item["provider"], 0) + 1

        providers = {}
        for name in sorted(set(timings) | set(failures)):
            times = timings.get(name, [])
            providers[name] = {
                "successful_runs": len(times),
                "failed_runs": failures.get(name, 0),
                "word_count_outlier_runs": outliers.get(name, 0),
                "avg_ms": statistics.mean(times) if times else None,
                "min_ms": min(times) if times else None,
                "max_ms": max(times) if times else None,
                "std_dev_ms": statistics.stdev(times) if len(times) > 1 else 0,
            }
        return {
            "timestamp": datetime.now().isoformat(),
            "providers_configured": self.manager.available_providers(),
            "total_runs": len(self.runs),
            "providers": providers,
            "raw_runs": self.runs,
        }

    @staticmethod
    def print_summary(summary: Dict[str, Any]) -> None:
        print("\n" + "=" * 60)
        print("STT BENCHMARK SUMMARY")
        print("=" * 60)
        print(f"Providers: {', '.join(summary['providers_configured'])}")
        print(f"Runs: {summary['total_runs']}")
        for name, stats in summary["providers"].items():
            print(f"\n  {name}:")
            print(f"    Successful: {stats['successful_runs']}  Failed: {stats['failed_runs']}")
            if stats["avg_ms"] is not None:
                print(f"    Average: {stats['avg_ms']:.0f}ms  Min: {stats['min_ms']}ms  Max: {stats['max_ms']}ms")
            if stats["word_count_outlier_runs"]:
                print(f"    Word count outlier in {stats['word_count_outlier_runs']} run(s)")

    @staticmethod
    def save(summary: Dict[str, Any], filename: str = None) -> None:
        if filename is None:
            filename = f"stt_benchmark_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        with open(filename, 'w') as f:
            json.dump(summary, f, indent=2, default=str)
        print(f"\nBenchmark results saved to: {filename}")


def main():
    parser = argparse.ArgumentParser(description="Benchmark the configured STT providers")
    parser.add_argument("files", nargs="+", type=Path)
    parser.add_argument("--runs", type=int, default=1)
    parser.add_argument("--language", default=None)
    parser.add_argument("--output", default=None)
    args = parser.parse_args()

    setup_logging("WARNING", settings.log_file)
    print("CallQC STT Provider Benchmark")
    print("=" * 50)

    benchmarker = ProviderBenchmarker(language=args.language)
    if not benchmarker.manager.is_available():
        print("No STT provider configured; set at least one provider API key.")
        sys.exit(1)

    for path in args.files:
        if not path.is_file():
            print(f"Skipping missing file: {path}")
            continue
        benchmarker.benchmark_file(path, runs=args.runs)

    summary = benchmarker.summarize()
    benchmarker.print_summary(summary)
    benchmarker.save(summary, args.output)


if __name__ == "__main__":
    main()
