"""
Main entry point for the ONNX to DAQ converter.
"""

import logging
import argparse
import sys
from pathlib import Path
from typing import Optional

from onnx2daq import __version__
from onnx2daq.onnx_model import ONNXModel
from onnx2daq.graph_optimizer import GraphOptimizer
from onnx2daq.onnx_to_daq import onnx_to_daq
from onnx2daq.daq_writer import serialize_model, save_model

logger = logging.getLogger(__name__)


def convert_onnx_to_daq(
    model_path: str | Path, optimize: bool = True, output_path: Optional[str | Path] = None
) -> bytes:
    """
    Complete conversion pipeline: ONNX -> optimized graph -> lowered model -> DAQ

    The output file is written only after the whole conversion succeeded.

    Args:
        model_path: Path to ONNX model file
        optimize: Whether to fuse batch normalization into convolutions first
        output_path: Optional path to save the DAQ model

    Returns:
        Serialized DAQ model
    """
    logger.info(f"Converting ONNX model: {model_path}")

    # Step 1: Load ONNX model
    logger.info("Step 1: Loading ONNX model...")
    analyzer = ONNXModel(model_path)
    analyzer.load_model()

    return convert_model(analyzer, optimize=optimize, output_path=output_path)


def convert_model(
    analyzer: ONNXModel, optimize: bool = True, output_path: Optional[str | Path] = None
) -> bytes:
    """Run steps 2-4 of the pipeline on an already loaded model."""
    # Step 2: Optimize graph (optional)
    if optimize:
        logger.info("Step 2: Optimizing graph...")
        GraphOptimizer(analyzer).optimize()
    else:
        logger.info("Step 2: Skipping optimization (optimize=False)")

    # Step 3: Lower to DAQ layers
    logger.info("Step 3: Lowering to DAQ layers...")
    model = onnx_to_daq(analyzer)
    logger.info(f"  Created {len(model.layers)} layers")

    # Step 4: Serialize, and write only once everything succeeded
    if output_path:
        logger.info(f"Step 4: Writing to {output_path}")
        buffer = save_model(model, output_path)
    else:
        logger.info("Step 4: Serializing")
        buffer = serialize_model(model)

    logger.info("Conversion complete!")
    return buffer


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Convert ONNX neural network models to the DAQ format",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Basic conversion
  onnx2daq model.onnx -o model.daq

  # Without batch normalization fusion
  onnx2daq model.onnx -o model.daq --no-optimize

  # Verbose output, output path derived from the input
  onnx2daq model.onnx -v
        """,
    )

    parser.add_argument("input", type=str, help="Path to input ONNX model file")

    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Path to output DAQ file (default: <input_name>.daq)",
    )

    parser.add_argument(
        "--no-optimize",
        action="store_true",
        help="Disable fusing batch normalization into convolutions",
    )

    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose/debug output"
    )

    parser.add_argument(
        "--version", action="version", version=f"ONNX to DAQ Converter v{__version__}"
    )

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for CLI."""
    args = parse_args(argv)

    setup_logging(args.verbose)

    input_path = Path(args.input)
    if not input_path.exists():
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    if not input_path.suffix.lower() == ".onnx":
        logger.warning(f"Input file does not have .onnx extension: {args.input}")

    output_path = args.output
    if output_path is None:
        output_path = input_path.with_suffix(".daq")
        logger.info(f"Auto-generated output path: {output_path}")

    try:
        convert_onnx_to_daq(
            model_path=input_path,
            optimize=not args.no_optimize,
            output_path=output_path,
        )

        logger.info(f"Successfully converted {input_path.name}")
        logger.info(f"Output written to {output_path}")

    except Exception as e:
        logger.error(f"Conversion failed: {e}", exc_info=args.verbose)
        sys.exit(1)


if __name__ == "__main__":
    main()
