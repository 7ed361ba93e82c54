#!/usr/bin/env python3
"""
Train a shape recognition network from the command line.

Usage:
    python scripts/train_shapes.py --layers 400,40,4 --epochs 50

The script will:
1. Build a network and a shape generator
2. Train the network on a generated training set
3. Test it on a freshly generated set
4. Print a short report
"""

import os
import sys
from typing import List, Optional

import click

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from shapenet.generator import ShapeGenerator  # noqa: E402
from shapenet.network import ConfigurationError, Network  # noqa: E402
from shapenet.sample import FigureType  # noqa: E402


def parse_layers(ctx: click.Context, param: click.Parameter, value: str) -> List[int]:
    """Turn '400,40,4' into [400, 40, 4]."""
    try:
        return [int(size) for size in value.split(',')]
    except ValueError:
        raise click.BadParameter(
            f"expected comma-separated integers, got {value!r}"
        )


def print_epoch(data: dict) -> None:
    click.echo(f"   Epoch {data['epoch']:>4}/{data['total_epochs']}: "
               f"{data['correct']}/{data['total']} solved "
               f"({data['accuracy']:.2%}, {data['elapsed_time']:.1f}s)")


@click.command()
@click.option('--layers', default='400,40,4', show_default=True,
              callback=parse_layers, help='Layer sizes, sensors first')
@click.option('--training-size', type=click.IntRange(min=1), default=100,
              show_default=True, help='Number of generated training figures')
@click.option('--test-size', type=click.IntRange(min=0), default=100,
              show_default=True, help='Number of generated test figures')
@click.option('--epochs', type=click.IntRange(min=1), default=50,
              show_default=True, help='Maximum number of passes over the training set')
@click.option('--acceptable-accuracy', type=click.FloatRange(0.0, 1.0), default=0.9,
              show_default=True, help='Stop once training accuracy exceeds this')
@click.option('--learning-rate', type=float, default=0.01, show_default=True)
@click.option('--figure-count', type=click.IntRange(1, len(FigureType)), default=4,
              show_default=True, help='Number of figure classes to draw')
@click.option('--seed', type=int, default=None, help='Seed for weights and figures')
def main(
    layers: List[int],
    training_size: int,
    test_size: int,
    epochs: int,
    acceptable_accuracy: float,
    learning_rate: float,
    figure_count: int,
    seed: Optional[int]
) -> None:
    """Train a network on generated figures and report its accuracy."""
    click.echo("=" * 60)
    click.echo("Shape Recognition Trainer")
    click.echo("=" * 60)

    generator = ShapeGenerator(seed=seed)
    generator.figure_count = figure_count
    try:
        net = Network(layers, learning_rate=learning_rate, seed=seed)
    except ConfigurationError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)
    if net.sizes[-1] < figure_count:
        click.echo(f"❌ Error: {figure_count} figure classes need at least "
                   f"{figure_count} outputs, got {net.sizes[-1]}", err=True)
        sys.exit(1)

    click.echo(f"\n🧠 Network {net.sizes}, learning rate {net.learning_rate}")

    training_set = generator.generate_set(training_size)
    click.echo(f"\n🏋️ Training on {len(training_set)} figures...")
    try:
        accuracy = net.train_on_dataset(
            training_set,
            epochs,
            acceptable_accuracy,
            callback=print_epoch
        )
    except ValueError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Training accuracy: {accuracy:.2%}")

    test_set = generator.generate_set(test_size)
    test_accuracy = net.test_on_dataset(test_set)
    if test_accuracy is None:
        click.echo("\n🔍 Test set is empty, accuracy undefined")
    else:
        click.echo(f"\n🔍 Test accuracy on {len(test_set)} new figures: "
                   f"{test_accuracy:.2%}")


if __name__ == '__main__':
    main()
