#!/usr/bin/env python3
import argparse
import os.path
import time

from VoidType import DEFAULT_TEXT, OutFormat, Params, VariationCache, render_text, save_image


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=None,
                             help='Which format to render (all by default)')
    example_presets = sorted(Params.example_names())
    args_parser.add_argument('--preset',
                             choices=example_presets,
                             default=None,
                             help='Which preset (all by default)')
    args_parser.add_argument('--text',
                             default=DEFAULT_TEXT,
                             help='Text to render; \\n separates lines')
    args_parser.add_argument('--seed',
                             type=int,
                             default=0,
                             help='Seed for random presets')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    out_formats = [OutFormat(cli_args.format)] if cli_args.format else OutFormat
    text = cli_args.text.replace('\\n', '\n')
    for preset_name in ([cli_args.preset] if cli_args.preset else example_presets):
        print(f'Building example outputs for: {preset_name}')
        params = Params.load(preset_name)
        cache = VariationCache(cli_args.seed)

        for out_format in out_formats:
            try:
                start_time = time.process_time()
                img = render_text(params, text, out_format, cache=cache)
                filename = os.path.join(base_dir, f'{preset_name}.Text')
                print(f' Render time: {round(time.process_time() - start_time, 3)}')
                save_image(img, filename)
            except ValueError:
                print(f'Error processing {preset_name}; Skipping')


if __name__ == '__main__':
    main()
