import logging

import numpy as np

from np_unet import Tensor, UNetTrainer, create_unet_from_config, iou_score, load_config


def make_disc(size=20, radius=6.0, noise=0.1, random_state=0):
    """Noisy image of a bright disc and its binary mask"""
    rng = np.random.default_rng(random_state)
    yy, xx = np.mgrid[0:size, 0:size]
    center = (size - 1) / 2.0
    mask = ((yy - center) ** 2 + (xx - center) ** 2 <= radius ** 2).astype(np.float64)
    image = mask * 0.8 + rng.standard_normal((size, size)) * noise
    return Tensor.from_array(image), Tensor.from_array(mask)


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s %(message)s')
    logger = logging.getLogger('train_demo')

    config = load_config(input_size=20, num_en_decoders=1, max_filters=4,
                         learning_rate=0.01, loss_function='mse',
                         max_iterations=40, seed=0)
    image, mask = make_disc(size=config['input_size'])

    model = create_unet_from_config(config)
    logger.info("\n%s", model.summary())

    trainer = UNetTrainer(model, log_every=5)
    history = trainer.train(image, mask)

    prediction = model.predict(image).resize(*mask.shape)
    logger.info("final loss=%.4f | IoU=%.3f | steps=%d",
                history['loss'][-1], iou_score(prediction, mask), model.steps)


if __name__ == '__main__':
    main()
